"""
Tests for per-word scoring and the session sentiment tally.
"""

import pytest
from hypothesis import given, strategies as st

from sentiment import (
    INTENSIFIERS,
    NEGATIVE_WORDS,
    POSITIVE_WORDS,
    SentimentTally,
    chunk_sentiment,
    is_complex_word,
    score_token,
    score_word,
)


def _casings(word):
    return st.sampled_from([word, word.upper(), word.capitalize()])


class TestScoreWord:
    @given(st.sampled_from(sorted(POSITIVE_WORDS)).flatmap(_casings))
    def test_positive_words_score_positive(self, word):
        score = score_word(word)
        assert 0 < score <= 3

    @given(st.sampled_from(sorted(NEGATIVE_WORDS)).flatmap(_casings))
    def test_negative_words_score_negative(self, word):
        score = score_word(word)
        assert -3 <= score < 0

    @given(st.text(max_size=20))
    def test_any_token_stays_in_range(self, raw):
        assert -3 <= score_word(raw) <= 3

    def test_shouting_amplifies_in_the_current_direction(self):
        assert score_word("hate") == -2
        assert score_word("HATE") == -3
        assert score_word("love") == 2
        assert score_word("LOVE") == 3

    def test_short_uppercase_is_not_shouting(self):
        assert score_word("NO") == -2
        assert score_word("I") == 0

    def test_neutral_shouting_leans_positive(self):
        assert score_word("TABLE") == 1

    @pytest.mark.parametrize("word", sorted(INTENSIFIERS))
    def test_intensifier_alone_leans_positive(self, word):
        assert score_word(word) == 1

    def test_unknown_lowercase_word_is_neutral(self):
        assert score_word("table") == 0


class TestComplexity:
    @pytest.mark.parametrize("word", ["wonderful", "beautiful", "elephant", "banana"])
    def test_complex_words(self, word):
        assert is_complex_word(word)

    @pytest.mark.parametrize("word", ["cat", "this", "talk", "I", "123"])
    def test_simple_words(self, word):
        assert not is_complex_word(word)

    def test_non_letters_are_ignored(self):
        # six letters and two vowel runs once digits and underscores go
        assert not is_complex_word("ab_cd_12ef")

    def test_score_token_pairs_score_and_flag(self):
        assert score_token("wonderful") == (2, True)


class TestSentimentTally:
    def test_chunk_labels(self):
        assert chunk_sentiment("I love this") == "positive"
        assert chunk_sentiment("this is awful") == "negative"
        assert chunk_sentiment("the table is brown") == "neutral"
        assert chunk_sentiment("") == "neutral"

    def test_empty_tally_has_no_score(self):
        tally = SentimentTally()
        assert tally.total == 0
        assert tally.score is None
        assert tally.color() is None
        assert tally.description() == "No sentiment data"

    def test_score_and_bands(self):
        tally = SentimentTally()
        tally.extend(["positive", "positive", "positive", "negative"])
        assert tally.score == 50
        assert tally.description() == "Positive"
        assert tally.color() == "#22c55e"

    def test_all_negative(self):
        tally = SentimentTally()
        for text in ["ugh", "terrible day", "this is broken"]:
            tally.add_text(text)
        assert tally.negative == 3
        assert tally.score == -100
        assert tally.description() == "Very Negative"
        assert tally.color() == "#ef4444"

    def test_neutral_band(self):
        tally = SentimentTally(positive=1, negative=1, neutral=8)
        assert tally.score == 0
        assert tally.description() == "Neutral"
        assert tally.color() == "#eab308"

    def test_reset(self):
        tally = SentimentTally(positive=2, negative=1, neutral=1)
        tally.reset()
        assert tally.total == 0
