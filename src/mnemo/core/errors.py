"""
Error taxonomy.

Transient infrastructure errors are retried locally and degrade gracefully.
Data-integrity errors abort the specific operation and reach the caller.
"""


class MnemoError(Exception):
    """Base class for all memory subsystem errors."""


class TransientError(MnemoError):
    """Failure that may succeed on retry (timeouts, connection resets)."""


class StoreUnavailable(TransientError):
    """Episodic or semantic backend could not be reached."""


class EmbeddingFailure(TransientError):
    """Embedding provider failed or timed out."""


class CompletionFailure(TransientError):
    """Completion provider failed or timed out."""


class NotFound(MnemoError, KeyError):
    """Unknown memory id."""

    def __init__(self, memory_id: str, kind: str = "memory"):
        self.memory_id = memory_id
        self.kind = kind
        super().__init__(f"{kind} not found: {memory_id}")

    def __str__(self) -> str:
        return self.args[0]


class DimensionMismatch(MnemoError, ValueError):
    """Vector dimension differs from the configured dimension. Requires reindexing."""

    def __init__(self, expected: int, actual: int, context: str = ""):
        self.expected = expected
        self.actual = actual
        where = f" ({context})" if context else ""
        super().__init__(f"Embedding dimension mismatch{where}: expected {expected}, got {actual}")


class UserIsolationViolation(MnemoError, PermissionError):
    """Attempt to read or write a memory owned by another user."""

    def __init__(self, requested_user: str, owner_user: str, memory_id: str | None = None):
        self.requested_user = requested_user
        self.owner_user = owner_user
        self.memory_id = memory_id
        target = f" memory {memory_id}" if memory_id else ""
        super().__init__(
            f"User {requested_user!r} attempted to access{target} owned by {owner_user!r}"
        )


class ExtractionParseFailure(MnemoError, ValueError):
    """Completion output could not be parsed into extraction proposals."""


class BudgetViolation(MnemoError, AssertionError):
    """Compressed context exceeded its token budget. Indicates a bug."""


def is_transient(exc: BaseException) -> bool:
    """Whether an exception is worth retrying."""
    return isinstance(exc, (TransientError, TimeoutError, ConnectionError))
