from enum import Enum


class ErrorKind(str, Enum):
    """Outcome kinds surfaced to callers. Only MALFORMED_BLOCK is recovered locally."""
    MALFORMED_BLOCK = "MALFORMED_BLOCK"
    NOT_FOUND = "NOT_FOUND"
    AMBIGUOUS = "AMBIGUOUS"
    CONFLICT = "CONFLICT"
    OPTIMIZER_TIMEOUT = "OPTIMIZER_TIMEOUT"
    OPTIMIZER_FAILURE = "OPTIMIZER_FAILURE"
    INDEX_OUT_OF_RANGE = "INDEX_OUT_OF_RANGE"
    ALREADY_PINNED = "ALREADY_PINNED"


class MalformedRequestError(ValueError):
    """A fixed-schedule request is missing fields it cannot be served without."""


class StaleAggregateError(RuntimeError):
    """Conditional write rejected: the stored aggregate moved on since it was read."""

    def __init__(self, user_id: str, expected: int, actual: int):
        super().__init__(
            f"schedule aggregate for {user_id!r} is at version {actual}, expected {expected}"
        )
        self.user_id = user_id
        self.expected = expected
        self.actual = actual
