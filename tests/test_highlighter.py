"""
Tests for interim-transcript tokenizing and token styling.
"""

import pytest
from hypothesis import given, strategies as st

from highlighter import StyledSpan, highlight, is_word_token, tier_classes, tokenize


class TestTokenize:
    @given(st.text())
    def test_tokenizing_is_lossless(self, text):
        assert "".join(tokenize(text)) == text

    @given(st.text())
    def test_highlight_is_lossless(self, text):
        assert "".join(span.text for span in highlight(text)) == text

    @pytest.mark.parametrize("text", ["", "!!!", "   \n\t", "a"])
    def test_degenerate_inputs(self, text):
        assert "".join(tokenize(text)) == text

    def test_token_kinds(self):
        assert tokenize("I HATE this!!") == ["I", " ", "HATE", " ", "this", "!!"]
        assert is_word_token("HATE")
        assert not is_word_token("!!")
        assert not is_word_token(" ")


class TestTiers:
    @pytest.mark.parametrize(
        "magnitude, classes",
        [
            (3, ("pos", "s3")),
            (2, ("pos", "s3")),
            (1, ("pos", "s2")),
            (0, ()),
            (-1, ("neg", "s2")),
            (-2, ("neg", "s3")),
            (-3, ("neg", "s3")),
        ],
    )
    def test_tier_classes(self, magnitude, classes):
        assert tier_classes(magnitude) == classes


class TestHighlight:
    def test_strong_negative_and_last_word(self):
        spans = highlight("I HATE this!!")
        assert [s.text for s in spans] == ["I", " ", "HATE", " ", "this", "!!"]

        hate = spans[2]
        assert "lt-token" in hate.classes
        assert "neg" in hate.classes and "s3" in hate.classes
        assert "pop" not in hate.classes

        this = spans[4]
        assert "pop" in this.classes
        assert "pos" not in this.classes and "neg" not in this.classes

        assert spans[5] == StyledSpan("!!")
        assert spans[1].classes == ()

    def test_only_one_pop(self):
        spans = highlight("so much wonderful talk, really")
        popped = [s.text for s in spans if "pop" in s.classes]
        assert popped == ["really"]

    def test_complex_words_are_long(self):
        spans = highlight("wonderful cat")
        assert "long" in spans[0].classes
        assert "long" not in spans[2].classes

    def test_every_word_token_is_marked(self):
        spans = highlight("one, two; three")
        words = [s for s in spans if s.is_word]
        assert [s.text for s in words] == ["one", "two", "three"]
        assert all("lt-token" in s.classes for s in words)

    def test_no_words_no_pop(self):
        assert all(not s.classes for s in highlight("?! ..."))
