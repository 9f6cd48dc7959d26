"""Tests for token counting and truncation."""

from unittest.mock import patch

from mnemo.llm.tokens import TokenCounter, estimate_tokens


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("x" * 160) == 40


def test_counter_without_model_uses_estimate():
    counter = TokenCounter()
    assert counter.count("x" * 41) == 11
    assert counter.count("") == 0


def test_counter_falls_back_when_tokenizer_fails():
    counter = TokenCounter("no-such/model")
    with patch("mnemo.llm.tokens.token_counter", side_effect=ValueError("unknown model")) as tc:
        assert counter.count("x" * 8) == 2
        assert counter.count("x" * 8) == 2
    # Fallback is sticky: the tokenizer is not retried for every call
    assert tc.call_count == 1


def test_counter_uses_exact_tokenizer():
    counter = TokenCounter("gpt-4o")
    with patch("mnemo.llm.tokens.token_counter", return_value=7):
        assert counter.count("anything") == 7


def test_truncate_fits_budget():
    counter = TokenCounter()
    text = "word " * 100
    truncated = counter.truncate(text, 10)
    assert counter.count(truncated) <= 10
    assert truncated.endswith("...")
    assert text.startswith(truncated[:-3])


def test_truncate_short_text_unchanged():
    counter = TokenCounter()
    assert counter.truncate("short", 10) == "short"


def test_truncate_zero_budget():
    counter = TokenCounter()
    assert counter.truncate("anything", 0) == ""
