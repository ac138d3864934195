"""
Tests for speakable-unit splitting.
"""

import pytest

from src.voice.text import SpeakableBuffer, find_clause_end, find_sentence_end


class TestSentenceEnd:
    """Tests for sentence boundary detection."""

    def test_simple(self):
        text = "Hello there. How are you?"
        assert text[:find_sentence_end(text)] == "Hello there."

    def test_end_of_text(self):
        assert find_sentence_end("Done!") == 5

    def test_requires_whitespace_after(self):
        assert find_sentence_end("version 2.5 is out") == -1

    def test_not_at_position_zero(self):
        assert find_sentence_end(". leading") == -1

    def test_closing_quote_included(self):
        text = 'She said "stop." Then left.'
        assert text[:find_sentence_end(text)] == 'She said "stop."'

    def test_lowercase_continuation_is_not_boundary(self):
        text = "Use a tool, e.g. a hammer. Then rest."
        assert text[:find_sentence_end(text)] == "Use a tool, e.g. a hammer."

    @pytest.mark.parametrize("text", ["Dr. Smith arrived.", "I met Mr. Jones today.", "See J. Smith."])
    def test_abbreviations(self, text):
        assert find_sentence_end(text) == len(text)

    def test_repeated_terminators(self):
        text = "Really?! Yes."
        assert text[:find_sentence_end(text)] == "Really?!"

    def test_no_boundary(self):
        assert find_sentence_end("still going") == -1


class TestClauseEnd:
    """Tests for clause boundary detection."""

    def test_comma(self):
        text = "Well, maybe"
        assert text[:find_clause_end(text)] == "Well,"

    def test_comma_without_space(self):
        assert find_clause_end("1,000 people") == -1

    def test_em_dash(self):
        text = "I think — honestly — yes"
        assert text[:find_clause_end(text)].strip() == "I think —"

    def test_double_hyphen(self):
        text = "Wait -- what"
        assert text[:find_clause_end(text)].strip() == "Wait --"

    def test_earliest_wins(self):
        text = "First; then -- later, more"
        assert text[:find_clause_end(text)] == "First;"


class TestSpeakableBuffer:
    """Tests for the incremental splitter."""

    def test_waits_for_boundary(self):
        buf = SpeakableBuffer()
        assert buf.feed("Hello") == []
        assert buf.feed(" there") == []
        assert buf.pending == "Hello there"

    def test_emits_sentences(self):
        buf = SpeakableBuffer()
        assert buf.feed("Hi! How are") == ["Hi!"]
        assert buf.feed(" you? I'm ") == ["How are you?"]
        assert buf.flush() == ["I'm"]
        assert buf.units_flushed == 3

    def test_multiple_sentences_in_one_fragment(self):
        buf = SpeakableBuffer()
        assert buf.feed("One. Two. Three") == ["One.", "Two."]

    def test_short_clause_held(self):
        buf = SpeakableBuffer()
        assert buf.feed("Well, I") == []

    def test_long_clause_flushed(self):
        buf = SpeakableBuffer()
        units = buf.feed("After thinking about it for a while, I")
        assert units == ["After thinking about it for a while,"]
        assert buf.pending.strip() == "I"

    def test_abbreviation_across_fragments(self):
        buf = SpeakableBuffer()
        assert buf.feed("Dr.") == []
        assert buf.feed(" Smith arrived.") == ["Dr. Smith arrived."]

    def test_flush_empty(self):
        buf = SpeakableBuffer()
        assert buf.flush() == []
        buf.feed("   ")
        assert buf.flush() == []
        assert buf.units_flushed == 0
