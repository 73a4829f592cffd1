import pytest

import config
import db


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "data" / "bot.db")
    db.init_db()


def test_defaults_come_from_config():
    settings = db.get_user_settings(1)
    assert settings == {"model": config.OPENROUTER_MODEL, "system_prompt": config.SYSTEM_PROMPT}


def test_model_selection_persists():
    other = next(m["id"] for m in config.AVAILABLE_MODELS if m["id"] != config.OPENROUTER_MODEL)

    db.set_user_model(1, other)

    assert db.get_user_model(1) == other
    assert db.get_user_model(2) == config.OPENROUTER_MODEL


def test_unknown_model_rejected():
    with pytest.raises(ValueError):
        db.set_user_model(1, "no/such-model")


def test_prompt_set_and_reset_keeps_model():
    other = next(m["id"] for m in config.AVAILABLE_MODELS if m["id"] != config.OPENROUTER_MODEL)
    db.set_user_model(1, other)
    db.set_system_prompt(1, "  Answer like a pirate.  ")

    assert db.get_system_prompt(1) == "Answer like a pirate."
    assert db.get_user_model(1) == other

    db.reset_system_prompt(1)
    assert db.get_system_prompt(1) == config.SYSTEM_PROMPT
    assert db.get_user_model(1) == other


def test_image_capability_lookup():
    for model in config.AVAILABLE_MODELS:
        assert db.model_supports_images(model["id"]) == model["supports_images"]
    assert not db.model_supports_images("no/such-model")
