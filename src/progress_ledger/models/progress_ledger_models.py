import typing

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer

from progress_ledger.utils.base_types import (
    BlockHeight,
    CourseId,
    MilestoneId,
    Principal,
    ProgressId,
)


def _coerce_hex(value: typing.Any) -> typing.Any:
    # Hashes travel as hex over JSON and in DynamoDB; in memory they are raw bytes.
    if isinstance(value, str):
        return bytes.fromhex(value)
    return value


HexBytes = typing.Annotated[
    bytes,
    BeforeValidator(_coerce_hex),
    PlainSerializer(lambda value: value.hex(), return_type=str, when_used="json"),
]


class RequestContext(BaseModel):
    """Who is calling and what the current height is, read once per operation."""

    caller: Principal
    height: BlockHeight


class ProgressModel(BaseModel):
    # The same instances back the indexes and query results.
    model_config = ConfigDict(frozen=True)

    progressHash: HexBytes
    milestoneId: MilestoneId
    timestamp: BlockHeight
    verified: bool = False
    score: int
    attempts: int
    level: int
    difficulty: int
    expiry: BlockHeight
    status: bool = True


class ProgressWithUserModel(ProgressModel):
    user: Principal
    courseId: CourseId

    def to_progress(self) -> ProgressModel:
        return ProgressModel.model_validate(self.model_dump(exclude={"user", "courseId"}))


class ProgressUpdateModel(BaseModel):
    """Audit entry for the most recent update of a record."""

    model_config = ConfigDict(frozen=True)

    updateHash: HexBytes
    updateMilestone: MilestoneId
    updateTimestamp: BlockHeight
    updater: Principal
    updateScore: int


class FeeTransferModel(BaseModel):
    """
    A fee the ledger asks an external settlement service to move.
    The ledger records the intent only; it never holds balances.
    """

    model_config = ConfigDict(frozen=True)

    amount: int
    sender: Principal
    recipient: Principal


class LedgerStateModel(BaseModel):
    """
    Snapshot of a ledger. The (user, courseId) index is rebuilt from `progressById` on load.

    `revision` counts stored saves and guards against concurrent writers; `lastHeight` is the
    highest height any accepted operation ran at.
    """

    revision: int = 0
    nextProgressId: int = 0
    lastHeight: BlockHeight = BlockHeight(0)
    maxProgresses: int
    verificationFee: int
    rewardThreshold: int
    authorityContract: typing.Optional[Principal] = None
    progressById: dict[ProgressId, ProgressWithUserModel] = Field(default_factory=dict)
    progressUpdates: dict[ProgressId, ProgressUpdateModel] = Field(default_factory=dict)
    feeTransfers: list[FeeTransferModel] = Field(default_factory=list)


# --- API request bodies ---
# Only shapes and types are checked here; range rules belong to the ledger so that
# rejections carry a ledger error kind.


class SetAuthorityInputModel(BaseModel):
    authority: Principal


class SetVerificationFeeInputModel(BaseModel):
    amount: int


class SetRewardThresholdInputModel(BaseModel):
    threshold: int


class SubmitProgressInputModel(BaseModel):
    courseId: CourseId
    progressHash: HexBytes
    milestoneId: MilestoneId
    score: int
    attempts: int
    level: int
    difficulty: int
    expiry: BlockHeight


class VerifyProgressInputModel(BaseModel):
    verifier: Principal


class UpdateProgressInputModel(BaseModel):
    progressHash: HexBytes
    milestoneId: MilestoneId
    score: int
