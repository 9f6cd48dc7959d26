"""Tests for error classification and bounded retry."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from mnemo.core.errors import (
    BudgetViolation,
    DimensionMismatch,
    EmbeddingFailure,
    ExtractionParseFailure,
    NotFound,
    StoreUnavailable,
    UserIsolationViolation,
    is_transient,
)
from mnemo.core.retry import call_with_retry


def test_transient_classification():
    assert is_transient(StoreUnavailable("down"))
    assert is_transient(EmbeddingFailure("timeout"))
    assert is_transient(TimeoutError())
    assert is_transient(ConnectionResetError())
    assert not is_transient(DimensionMismatch(8, 4))
    assert not is_transient(PermissionError("auth"))
    assert not is_transient(ExtractionParseFailure("bad json"))


def test_error_hierarchy():
    assert isinstance(NotFound("m1"), KeyError)
    assert str(NotFound("m1", "episodic memory")) == "episodic memory not found: m1"
    assert isinstance(DimensionMismatch(768, 384), ValueError)
    assert isinstance(UserIsolationViolation("a", "b", "m"), PermissionError)
    assert isinstance(BudgetViolation("over"), AssertionError)


@pytest.mark.asyncio
async def test_retries_transient_then_succeeds():
    fn = AsyncMock(side_effect=[StoreUnavailable("locked"), StoreUnavailable("locked"), "ok"])
    result = await call_with_retry(fn, "x", attempts=3, base_delay=0, max_delay=0, label="op")
    assert result == "ok"
    assert fn.await_count == 3
    fn.assert_awaited_with("x")


@pytest.mark.asyncio
async def test_non_transient_fails_fast():
    fn = AsyncMock(side_effect=DimensionMismatch(8, 4))
    with pytest.raises(DimensionMismatch):
        await call_with_retry(fn, attempts=3, base_delay=0, max_delay=0, label="op")
    assert fn.await_count == 1


@pytest.mark.asyncio
async def test_exhaustion_reraises_original():
    fn = AsyncMock(side_effect=StoreUnavailable("locked"))
    with pytest.raises(StoreUnavailable):
        await call_with_retry(fn, attempts=3, base_delay=0, max_delay=0, label="op")
    assert fn.await_count == 3


@pytest.mark.asyncio
async def test_timeout_counts_as_transient():
    calls = 0

    async def slow_then_fast():
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(1)
        return "done"

    result = await call_with_retry(
        slow_then_fast, attempts=2, timeout=0.05, base_delay=0, max_delay=0, label="slow"
    )
    assert result == "done"
    assert calls == 2
