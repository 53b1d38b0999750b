import enum
import typing

from pydantic import BaseModel

T = typing.TypeVar("T")


class LedgerErrorKind(enum.Enum):
    """Every way a ledger operation can reject its input. Values are the wire error codes."""

    NOT_AUTHORIZED = 100
    INVALID_COURSE_ID = 101
    INVALID_MILESTONE_ID = 102
    INVALID_PROGRESS_HASH = 103
    INVALID_VERIFICATION = 104
    PROGRESS_ALREADY_EXISTS = 105
    PROGRESS_NOT_FOUND = 106
    INVALID_TIMESTAMP = 107
    MAX_PROGRESSES_EXCEEDED = 110
    INVALID_REWARD_THRESHOLD = 111
    INVALID_UPDATE = 112
    INVALID_LEVEL = 114
    INVALID_DIFFICULTY = 115
    INVALID_EXPIRY = 116
    INVALID_SCORE = 117
    INVALID_ATTEMPTS = 118

    @property
    def code(self) -> int:
        return self.value


class LedgerResult(BaseModel, typing.Generic[T]):
    """
    Outcome of a ledger operation. Exactly one of `value` (on success) or
    `error` (on failure) is meaningful.
    """

    ok: bool
    value: typing.Optional[T] = None
    error: typing.Optional[LedgerErrorKind] = None

    @classmethod
    def success(cls, value: typing.Any) -> "LedgerResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: LedgerErrorKind) -> "LedgerResult":
        return cls(ok=False, error=error)
