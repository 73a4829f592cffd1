"""Answer formatting, page splitting and per-message pagination state."""
import logging
import re
from dataclasses import dataclass

from config import FORMAT_CACHE_SIZE, MAX_PAGE_LENGTH

logger = logging.getLogger(__name__)

# Separator runs: any run of heavy rules, then 3+ of light/double rules.
# Two passes: dropping a heavy rule can join light rules into a new run.
HEAVY_RULE_PATTERN = re.compile(r"━+")
LIGHT_RULE_PATTERN = re.compile(r"[─═]{3,}")
# Decorative sparkle markers at the start of a line
MARKER_PATTERN = re.compile(r"^(?:[ \t]*✨️?)+[ \t]*", re.MULTILINE)
# Two or more blank lines (possibly holding stray spaces)
BLANK_RUN_PATTERN = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)+")
# Words and the whitespace between them, separators kept
WORD_PATTERN = re.compile(r"(\s+)")

PARAGRAPH_SEP = "\n\n"


class ResponsePaginator:
    def __init__(self, max_page_length: int = MAX_PAGE_LENGTH, cache_size: int = FORMAT_CACHE_SIZE):
        self.max_page_length = max_page_length
        self.cache_size = cache_size
        self._format_cache: dict[str, str] = {}
        self._split_cache: dict[str, list[str]] = {}

    def format(self, raw: str) -> str:
        cached = self._format_cache.get(raw)
        if cached is not None:
            return cached

        text = HEAVY_RULE_PATTERN.sub("", raw)
        text = LIGHT_RULE_PATTERN.sub("", text)
        text = MARKER_PATTERN.sub("", text)
        text = BLANK_RUN_PATTERN.sub(PARAGRAPH_SEP, text)
        text = text.strip()

        if len(self._format_cache) < self.cache_size:
            self._format_cache[raw] = text
        return text

    def paginate(self, text: str) -> list[str]:
        cached = self._split_cache.get(text)
        if cached is not None:
            return list(cached)

        if len(text) <= self.max_page_length:
            pages = [text]
        else:
            pages = self._split_paragraphs(text)

        if len(self._split_cache) < self.cache_size:
            self._split_cache[text] = pages
        return list(pages)

    def _split_paragraphs(self, text: str) -> list[str]:
        limit = self.max_page_length
        pages: list[str] = []
        current = ""

        for paragraph in text.split(PARAGRAPH_SEP):
            if len(current) + len(paragraph) + len(PARAGRAPH_SEP) <= limit:
                current = f"{current}{PARAGRAPH_SEP}{paragraph}" if current else paragraph
                continue
            if current:
                pages.append(current.strip())
                current = ""
            if len(paragraph) > limit:
                pages.extend(self._split_words(paragraph))
            else:
                current = paragraph

        if current:
            pages.append(current.strip())
        return [p for p in pages if p]

    def _split_words(self, paragraph: str) -> list[str]:
        limit = self.max_page_length
        pages: list[str] = []
        chunk = ""
        gap = ""

        for token in WORD_PATTERN.split(paragraph):
            if not token:
                continue
            if token.isspace():
                gap = token
                continue
            word = token
            # A single word longer than a page has to be cut
            while len(word) > limit:
                if chunk:
                    pages.append(chunk)
                    chunk = ""
                pages.append(word[:limit])
                word = word[limit:]
            if not chunk:
                chunk = word
            elif len(chunk) + len(gap) + len(word) <= limit:
                chunk = f"{chunk}{gap}{word}"
            else:
                # The whitespace at a page boundary is dropped
                pages.append(chunk)
                chunk = word
            gap = ""

        if chunk:
            pages.append(chunk)
        return [p.strip() for p in pages if p.strip()]

    def clear_caches(self):
        self._format_cache.clear()
        self._split_cache.clear()
        logger.info("Paginator caches cleared")

    def stats(self) -> dict:
        return {
            "format_cache_size": len(self._format_cache),
            "split_cache_size": len(self._split_cache),
            "max_page_length": self.max_page_length,
        }


@dataclass
class PaginationState:
    pages: list[str]
    current_index: int = 0

    @property
    def page(self) -> str:
        return self.pages[self.current_index]


class PaginationStore:
    """Pagination cursors keyed by (chat_id, message_id) of the delivered message."""

    def __init__(self):
        self._states: dict[tuple[int, int], PaginationState] = {}

    def save(self, chat_id: int, message_id: int, pages: list[str]) -> PaginationState:
        state = PaginationState(pages=list(pages))
        self._states[(chat_id, message_id)] = state
        return state

    def get(self, chat_id: int, message_id: int) -> PaginationState | None:
        return self._states.get((chat_id, message_id))

    def delete(self, chat_id: int, message_id: int):
        self._states.pop((chat_id, message_id), None)

    def navigate(self, chat_id: int, message_id: int, direction: str) -> PaginationState | None:
        """Move the cursor; ``None`` means there is no page in that direction."""
        state = self._states.get((chat_id, message_id))
        if state is None:
            return None
        step = 1 if direction == "next" else -1
        index = state.current_index + step
        if index < 0 or index >= len(state.pages):
            return None
        state.current_index = index
        return state

    def clear_chat(self, chat_id: int) -> int:
        keys = [k for k in self._states if k[0] == chat_id]
        for k in keys:
            del self._states[k]
        return len(keys)

    def stats(self) -> dict:
        return {
            "active_states": len(self._states),
            "chats": len({chat_id for chat_id, _ in self._states}),
        }

    def __len__(self) -> int:
        return len(self._states)
