"""Tests for configuration module."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from mnemo.core.config import DEFAULT_CATEGORIES, Settings


def test_default_settings():
    """Settings load with defaults."""
    settings = Settings(
        _env_file=None,  # Don't load .env in tests
    )
    assert settings.data_dir == Path("data")
    assert settings.max_context_tokens == 8000
    assert settings.recency_half_life_hours == 24.0
    assert settings.relevance_floor == 0.5
    assert settings.extraction_batch_size == 5
    assert settings.extraction_min_confidence == 0.7
    assert settings.extraction_max_concepts_per_memory == 3
    assert settings.retry_attempts == 3
    assert settings.extraction_categories == DEFAULT_CATEGORIES


def test_db_path():
    """Database path combines data_dir and db_name."""
    settings = Settings(
        data_dir=Path("/tmp/test"),
        db_name="test.db",
        _env_file=None,
    )
    assert settings.db_path == Path("/tmp/test/test.db")


def test_env_prefix(monkeypatch):
    """MNEMO_ environment variables override defaults."""
    monkeypatch.setenv("MNEMO_MAX_CONTEXT_TOKENS", "1200")
    monkeypatch.setenv("MNEMO_EMBEDDING_MODEL", "openai/text-embedding-3-small")
    settings = Settings(_env_file=None)
    assert settings.max_context_tokens == 1200
    assert settings.embedding_model == "openai/text-embedding-3-small"


def test_categories_default_not_shared():
    """Each settings instance gets its own category list."""
    a = Settings(_env_file=None)
    a.extraction_categories.append("Custom")
    assert "Custom" not in Settings(_env_file=None).extraction_categories


@pytest.mark.parametrize(
    "field,value",
    [
        ("similarity_threshold", 1.5),
        ("relevance_floor", -0.1),
        ("embedding_dimensions", 0),
        ("max_context_tokens", 0),
    ],
)
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})
