import pytest

from bot.paginator import PaginationStore, ResponsePaginator


@pytest.fixture
def paginator():
    return ResponsePaginator(max_page_length=20, cache_size=10)


def test_format_strips_decoration_and_blank_runs(paginator):
    raw = "✨ Hello\n━━━━━━\n\n\n\n✨️ World\n───\nend"

    assert paginator.format(raw) == "Hello\n\nWorld\n\nend"


@pytest.mark.parametrize("raw", [
    "✨ ✨ x",
    "━✨x",
    "  a\n\n \n\n\nb  ",
    "plain text",
    "═══\n✨\n\n\nz",
    "a ──━─ b",
])
def test_format_is_idempotent(paginator, raw):
    once = paginator.format(raw)
    assert paginator.format(once) == once


def test_heavy_rule_inside_light_rules_is_removed_in_one_pass(paginator):
    assert paginator.format("a ──━─ b") == "a  b"


def test_short_text_is_a_single_page(paginator):
    text = "a" * 20
    assert paginator.paginate(text) == [text]


def test_one_over_limit_splits_between_words(paginator):
    text = "aaaa bbbb cccc dddd e"
    assert len(text) == 21

    pages = paginator.paginate(text)

    assert pages == ["aaaa bbbb cccc dddd", "e"]
    assert " ".join(pages) == text


def test_paragraphs_are_packed_greedily(paginator):
    text = "p" * 10 + "\n\n" + "q" * 6 + "\n\n" + "r" * 10

    pages = paginator.paginate(text)

    assert pages == ["p" * 10 + "\n\n" + "q" * 6, "r" * 10]
    assert "\n\n".join(pages) == text


def test_oversized_paragraph_falls_back_to_words(paginator):
    long_paragraph = " ".join(["word"] * 8)
    text = "intro\n\n" + long_paragraph

    pages = paginator.paginate(text)

    assert pages[0] == "intro"
    assert all(len(p) <= 20 for p in pages)
    assert " ".join(pages[1:]) == long_paragraph


def test_word_longer_than_page_is_cut(paginator):
    assert paginator.paginate("x" * 45) == ["x" * 20, "x" * 20, "x" * 5]


def test_no_page_exceeds_limit():
    paginator = ResponsePaginator(max_page_length=50)
    paragraphs = [" ".join(f"w{i}{j}" for j in range(i + 3)) for i in range(25)]
    text = "\n\n".join(paragraphs)

    pages = paginator.paginate(text)

    assert len(pages) > 1
    assert all(0 < len(p) <= 50 for p in pages)


def test_paginate_returns_independent_copies(paginator):
    text = "aaaa bbbb cccc dddd e"
    first = paginator.paginate(text)
    first.append("mutated")

    assert paginator.paginate(text) == ["aaaa bbbb cccc dddd", "e"]


def test_caches_stop_growing_at_capacity():
    paginator = ResponsePaginator(max_page_length=20, cache_size=2)
    for raw in ("one", "two", "✨ three"):
        paginator.format(raw)

    assert paginator.stats()["format_cache_size"] == 2
    assert paginator.format("✨ three") == "three"

    paginator.clear_caches()
    assert paginator.stats()["format_cache_size"] == 0


def test_navigation_stays_in_range():
    store = PaginationStore()
    store.save(1, 100, ["a", "b", "c"])

    assert store.navigate(1, 100, "prev") is None
    assert store.navigate(1, 100, "next").page == "b"
    assert store.navigate(1, 100, "next").page == "c"
    assert store.navigate(1, 100, "next") is None
    assert store.get(1, 100).current_index == 2
    assert store.navigate(1, 100, "prev").page == "b"
    assert store.navigate(2, 100, "next") is None


def test_clear_chat_only_drops_that_chat():
    store = PaginationStore()
    store.save(1, 100, ["a"])
    store.save(1, 101, ["b"])
    store.save(2, 100, ["c"])

    assert store.clear_chat(1) == 2
    assert len(store) == 1
    assert store.get(2, 100).page == "c"

    store.delete(2, 100)
    assert len(store) == 0


def test_line_separated_words_are_not_cut(paginator):
    pages = paginator.paginate("alphaaaa\nbetaaaaa\ngammaaaa")

    assert pages == ["alphaaaa\nbetaaaaa", "gammaaaa"]


def test_url_list_breaks_only_between_lines():
    paginator = ResponsePaginator(max_page_length=100)
    lines = [f"https://example.test/item-{n}" for n in range(30)]
    text = "\n".join(lines)

    pages = paginator.paginate(text)

    assert len(pages) > 1
    assert all(len(p) <= 100 for p in pages)
    assert all(line in lines for page in pages for line in page.split("\n"))
    assert "\n".join(pages) == text


def test_store_stats_count_states_and_chats():
    store = PaginationStore()
    store.save(1, 100, ["a"])
    store.save(1, 101, ["b"])
    store.save(2, 100, ["c"])

    assert store.stats() == {"active_states": 3, "chats": 2}
