"""
Speakable-unit segmentation for streamed response text.

Splits an incoming token stream into sentence- or clause-sized units for
synthesis. Sentence boundaries always flush; clause boundaries flush only
once the clause is long enough to sound natural on its own. Anything else
waits for more text or for the caller's flush timer.
"""

from __future__ import annotations

from typing import List

SENTENCE_TERMINATORS = ".!?"
CLOSING_PUNCTUATION = "\"')]}”’"
CLAUSE_MARKS = ",;:"
CLAUSE_DASHES = (" — ", " -- ")
MIN_CLAUSE_CHARS = 20

# Words that end with a period without ending the sentence.
ABBREVIATIONS = frozenset({
    "dr", "mr", "mrs", "ms", "prof", "sr", "jr", "st", "mt", "ft",
    "vs", "e.g", "i.e", "cf", "approx", "dept", "gen", "gov",
    "lt", "col", "capt", "sgt", "rev", "hon", "inc", "ltd", "jan",
    "feb", "mar", "apr", "jun", "jul", "aug", "sep", "sept", "oct",
    "nov", "dec", "fig", "vol", "ave", "blvd",
})


def _word_before(text: str, index: int) -> str:
    """Return the token immediately before `text[index]`, lowercased."""
    start = index
    while start > 0 and not text[start - 1].isspace():
        start -= 1
    return text[start:index].lstrip("\"'([{").lower()


def _is_abbreviation(text: str, index: int) -> bool:
    if text[index] != ".":
        return False
    word = _word_before(text, index)
    if not word:
        return False
    if word in ABBREVIATIONS:
        return True
    # Single initial, as in "J. R. R. Tolkien".
    return len(word) == 1 and word.isalpha() and text[index - 1].isupper()


def find_sentence_end(text: str) -> int:
    """
    Return the index one past the first sentence boundary, or -1.

    A boundary is `.`, `!` or `?` (not at position 0), optionally followed
    by closing quotes or brackets, then whitespace or end of text. It is not
    a boundary when the next word starts lowercase ("e.g. this") or when the
    word before a period is a known abbreviation ("Dr. Smith").
    """
    n = len(text)
    for i in range(1, n):
        if text[i] not in SENTENCE_TERMINATORS:
            continue

        end = i + 1
        while end < n and (text[end] in SENTENCE_TERMINATORS or text[end] in CLOSING_PUNCTUATION):
            end += 1

        if end < n and not text[end].isspace():
            continue

        nxt = end
        while nxt < n and text[nxt].isspace():
            nxt += 1
        if nxt < n and text[nxt].islower():
            continue

        if _is_abbreviation(text, i):
            continue

        return end
    return -1


def find_clause_end(text: str) -> int:
    """
    Return the index one past the first clause boundary, or -1.

    Clause boundaries are `,` `;` `:` followed by a space, or a spaced
    em-dash / double hyphen.
    """
    best = -1
    for i in range(len(text) - 1):
        if text[i] in CLAUSE_MARKS and text[i + 1] == " ":
            best = i + 1
            break

    for dash in CLAUSE_DASHES:
        idx = text.find(dash)
        if idx >= 0:
            end = idx + len(dash) - 1
            if best < 0 or end < best:
                best = end
    return best


class SpeakableBuffer:
    """
    Incremental splitter for one response cycle.

    `feed()` returns the units that became ready; `flush()` returns whatever
    is buffered (used by the flush timer and at end of stream).
    """

    def __init__(self, min_clause_chars: int = MIN_CLAUSE_CHARS):
        self.min_clause_chars = min_clause_chars
        self._buffer = ""
        self.units_flushed = 0

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, fragment: str) -> List[str]:
        self._buffer += fragment
        units: List[str] = []

        while True:
            idx = find_sentence_end(self._buffer)
            if idx < 0:
                break
            self._take(idx, units)

        if not units:
            idx = find_clause_end(self._buffer)
            if idx >= 0 and len(self._buffer[:idx].strip()) > self.min_clause_chars:
                self._take(idx, units)

        return units

    def flush(self) -> List[str]:
        units: List[str] = []
        self._take(len(self._buffer), units)
        return units

    def _take(self, idx: int, units: List[str]) -> None:
        unit = self._buffer[:idx].strip()
        self._buffer = self._buffer[idx:]
        if unit:
            units.append(unit)
            self.units_flushed += 1
