import logging
import typing

from progress_ledger.models.ledger_result_models import LedgerErrorKind, LedgerResult
from progress_ledger.models.progress_ledger_models import (
    FeeTransferModel,
    LedgerStateModel,
    ProgressModel,
    ProgressUpdateModel,
    ProgressWithUserModel,
    RequestContext,
)
from progress_ledger.utils.aws_env_vars import (
    DEFAULT_MAX_PROGRESSES,
    DEFAULT_REWARD_THRESHOLD,
    DEFAULT_VERIFICATION_FEE,
)
from progress_ledger.utils.base_types import (
    BlockHeight,
    CourseId,
    MilestoneId,
    Principal,
    ProgressId,
)

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

# The null/burn principal can never hold the authority role.
BURN_PRINCIPAL = Principal("SP000000000000000000002Q6VF78")

PROGRESS_HASH_LENGTH = 32
MIN_SCORE = 0
MAX_SCORE = 100
MAX_ATTEMPTS = 10
MIN_LEVEL = 1
MAX_LEVEL = 10
MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 5


def _is_valid_score(score: int) -> bool:
    return MIN_SCORE <= score <= MAX_SCORE


class ProgressLedger:
    """
    Single authority over all progress records.

    Records are indexed three ways: by (user, courseId), by global id (with owner and
    courseId), and by global id for the most recent update audit entry. Every mutating
    operation validates completely before it writes, so a rejected call leaves all
    indexes untouched and a successful call updates all of them before returning.

    Operations report rejections as a failed `LedgerResult`; they do not raise.

    Heights never go backwards: submit, verify and update reject a request context older
    than the newest height already accepted.
    """

    def __init__(
        self,
        max_progresses: int = DEFAULT_MAX_PROGRESSES,
        verification_fee: int = DEFAULT_VERIFICATION_FEE,
        reward_threshold: int = DEFAULT_REWARD_THRESHOLD,
    ) -> None:
        self._initial_settings = (max_progresses, verification_fee, reward_threshold)
        # Stored saves of the snapshot this ledger was loaded from.
        self.revision = 0
        self.reset()

    def reset(self) -> None:
        """Restores the ledger to its initial, empty state."""
        max_progresses, verification_fee, reward_threshold = self._initial_settings
        self.next_progress_id = 0
        self.last_height = BlockHeight(0)
        self.max_progresses = max_progresses
        self.verification_fee = verification_fee
        self.reward_threshold = reward_threshold
        self.authority_contract: typing.Optional[Principal] = None
        self.user_progress: dict[Principal, dict[CourseId, ProgressModel]] = {}
        self.progress_by_id: dict[ProgressId, ProgressWithUserModel] = {}
        self.progress_updates: dict[ProgressId, ProgressUpdateModel] = {}
        self.fee_transfers: list[FeeTransferModel] = []

    # --- Administration ---

    def set_authority_contract(self, contract_principal: Principal) -> LedgerResult[bool]:
        if contract_principal == BURN_PRINCIPAL:
            _LOGGER.warning("Rejected burn principal as authority contract.")
            return LedgerResult.failure(LedgerErrorKind.NOT_AUTHORIZED)
        if self.authority_contract is not None:
            _LOGGER.warning(f"Authority contract already set to {self.authority_contract}.")
            return LedgerResult.failure(LedgerErrorKind.NOT_AUTHORIZED)

        self.authority_contract = contract_principal
        _LOGGER.info(f"Authority contract set to {contract_principal}.")
        return LedgerResult.success(True)

    def set_verification_fee(self, new_fee: int) -> LedgerResult[bool]:
        if self.authority_contract is None:
            return LedgerResult.failure(LedgerErrorKind.NOT_AUTHORIZED)
        if new_fee < 0:
            return LedgerResult.failure(LedgerErrorKind.INVALID_UPDATE)

        self.verification_fee = new_fee
        _LOGGER.info(f"Verification fee set to {new_fee}.")
        return LedgerResult.success(True)

    def set_reward_threshold(self, new_threshold: int) -> LedgerResult[bool]:
        if self.authority_contract is None:
            return LedgerResult.failure(LedgerErrorKind.NOT_AUTHORIZED)
        if not _is_valid_score(new_threshold):
            return LedgerResult.failure(LedgerErrorKind.INVALID_REWARD_THRESHOLD)

        self.reward_threshold = new_threshold
        _LOGGER.info(f"Reward threshold set to {new_threshold}.")
        return LedgerResult.success(True)

    # --- Record lifecycle ---

    def _is_stale(self, ctx: RequestContext) -> bool:
        if ctx.height < self.last_height:
            _LOGGER.warning(f"Rejected height {ctx.height} from {ctx.caller}; ledger is at {self.last_height}.")
            return True
        return False

    def _validate_submission(
        self,
        ctx: RequestContext,
        course_id: CourseId,
        progress_hash: bytes,
        milestone_id: MilestoneId,
        score: int,
        attempts: int,
        level: int,
        difficulty: int,
        expiry: BlockHeight,
    ) -> typing.Optional[LedgerErrorKind]:
        """Returns the first failing check, in a fixed order, or None."""
        if self._is_stale(ctx):
            return LedgerErrorKind.INVALID_TIMESTAMP
        if self.next_progress_id >= self.max_progresses:
            return LedgerErrorKind.MAX_PROGRESSES_EXCEEDED
        if course_id <= 0:
            return LedgerErrorKind.INVALID_COURSE_ID
        if len(progress_hash) != PROGRESS_HASH_LENGTH:
            return LedgerErrorKind.INVALID_PROGRESS_HASH
        if milestone_id <= 0:
            return LedgerErrorKind.INVALID_MILESTONE_ID
        if not _is_valid_score(score):
            return LedgerErrorKind.INVALID_SCORE
        if attempts > MAX_ATTEMPTS:
            return LedgerErrorKind.INVALID_ATTEMPTS
        if level < MIN_LEVEL or level > MAX_LEVEL:
            return LedgerErrorKind.INVALID_LEVEL
        if difficulty < MIN_DIFFICULTY or difficulty > MAX_DIFFICULTY:
            return LedgerErrorKind.INVALID_DIFFICULTY
        if expiry <= ctx.height:
            return LedgerErrorKind.INVALID_EXPIRY
        if self.authority_contract is None:
            return LedgerErrorKind.NOT_AUTHORIZED
        if course_id in self.user_progress.get(ctx.caller, {}):
            return LedgerErrorKind.PROGRESS_ALREADY_EXISTS
        return None

    def submit_progress(
        self,
        ctx: RequestContext,
        course_id: CourseId,
        progress_hash: bytes,
        milestone_id: MilestoneId,
        score: int,
        attempts: int,
        level: int,
        difficulty: int,
        expiry: BlockHeight,
    ) -> LedgerResult[ProgressId]:
        error = self._validate_submission(
            ctx, course_id, progress_hash, milestone_id, score, attempts, level, difficulty, expiry
        )
        if error is not None:
            _LOGGER.info(f"Rejected submission from {ctx.caller} for course {course_id}: {error.name}")
            return LedgerResult.failure(error)

        # Validated above; the authority is known to be set here.
        authority = typing.cast(Principal, self.authority_contract)
        self.fee_transfers.append(FeeTransferModel(amount=self.verification_fee, sender=ctx.caller, recipient=authority))

        progress_id = ProgressId(self.next_progress_id)
        record = ProgressWithUserModel(
            progressHash=bytes(progress_hash),
            milestoneId=milestone_id,
            timestamp=ctx.height,
            verified=False,
            score=score,
            attempts=attempts,
            level=level,
            difficulty=difficulty,
            expiry=expiry,
            status=True,
            user=ctx.caller,
            courseId=course_id,
        )
        self._write_record(progress_id, record)
        self.next_progress_id += 1
        self.last_height = ctx.height

        _LOGGER.info(f"Progress {progress_id} submitted by {ctx.caller} for course {course_id}.")
        return LedgerResult.success(progress_id)

    def verify_progress(self, ctx: RequestContext, progress_id: ProgressId, verifier: Principal) -> LedgerResult[bool]:
        if self._is_stale(ctx):
            return LedgerResult.failure(LedgerErrorKind.INVALID_TIMESTAMP)
        record = self.progress_by_id.get(progress_id)
        if record is None:
            return LedgerResult.failure(LedgerErrorKind.INVALID_VERIFICATION)
        # Only checks that the caller is the identity it claims to verify as.
        if ctx.caller != verifier:
            return LedgerResult.failure(LedgerErrorKind.INVALID_VERIFICATION)
        if record.verified:
            return LedgerResult.failure(LedgerErrorKind.INVALID_VERIFICATION)
        if record.score < self.reward_threshold:
            _LOGGER.info(f"Progress {progress_id} score {record.score} below threshold {self.reward_threshold}.")
            return LedgerResult.failure(LedgerErrorKind.INVALID_VERIFICATION)

        self._write_record(progress_id, record.model_copy(update={"verified": True}))
        self.last_height = ctx.height
        _LOGGER.info(f"Progress {progress_id} verified by {verifier}.")
        return LedgerResult.success(True)

    def update_progress(
        self,
        ctx: RequestContext,
        progress_id: ProgressId,
        new_hash: bytes,
        new_milestone_id: MilestoneId,
        new_score: int,
    ) -> LedgerResult[bool]:
        if self._is_stale(ctx):
            return LedgerResult.failure(LedgerErrorKind.INVALID_TIMESTAMP)
        record = self.progress_by_id.get(progress_id)
        if record is None:
            return LedgerResult.failure(LedgerErrorKind.PROGRESS_NOT_FOUND)
        if record.user != ctx.caller:
            return LedgerResult.failure(LedgerErrorKind.INVALID_UPDATE)
        if len(new_hash) != PROGRESS_HASH_LENGTH:
            return LedgerResult.failure(LedgerErrorKind.INVALID_UPDATE)
        if new_milestone_id <= 0:
            return LedgerResult.failure(LedgerErrorKind.INVALID_UPDATE)
        if not _is_valid_score(new_score):
            return LedgerResult.failure(LedgerErrorKind.INVALID_UPDATE)
        if record.verified:
            return LedgerResult.failure(LedgerErrorKind.INVALID_UPDATE)

        updated = record.model_copy(
            update={
                "progressHash": bytes(new_hash),
                "milestoneId": new_milestone_id,
                "timestamp": ctx.height,
                "score": new_score,
            }
        )
        self._write_record(progress_id, updated)
        self.progress_updates[progress_id] = ProgressUpdateModel(
            updateHash=bytes(new_hash),
            updateMilestone=new_milestone_id,
            updateTimestamp=ctx.height,
            updater=ctx.caller,
            updateScore=new_score,
        )
        self.last_height = ctx.height
        _LOGGER.info(f"Progress {progress_id} updated by {ctx.caller}.")
        return LedgerResult.success(True)

    def _write_record(self, progress_id: ProgressId, record: ProgressWithUserModel) -> None:
        # Both indexes are written together; neither is ever written alone.
        self.progress_by_id[progress_id] = record
        self.user_progress.setdefault(record.user, {})[record.courseId] = record.to_progress()

    # --- Queries ---

    def get_progress(self, user: Principal, course_id: CourseId) -> typing.Optional[ProgressModel]:
        return self.user_progress.get(user, {}).get(course_id)

    def get_progress_by_id(self, progress_id: ProgressId) -> typing.Optional[ProgressWithUserModel]:
        return self.progress_by_id.get(progress_id)

    def get_progress_update(self, progress_id: ProgressId) -> typing.Optional[ProgressUpdateModel]:
        return self.progress_updates.get(progress_id)

    def get_progress_count(self) -> LedgerResult[int]:
        return LedgerResult.success(self.next_progress_id)

    def check_progress_existence(self, caller: Principal, course_id: CourseId) -> LedgerResult[bool]:
        return LedgerResult.success(course_id in self.user_progress.get(caller, {}))

    # --- Fee intents ---

    def drain_fee_transfers(self) -> list[FeeTransferModel]:
        """Hands the pending fee-transfer intents to the caller and clears the log."""
        transfers = self.fee_transfers
        self.fee_transfers = []
        return transfers

    # --- Snapshots ---

    def to_state(self) -> LedgerStateModel:
        return LedgerStateModel(
            revision=self.revision,
            nextProgressId=self.next_progress_id,
            lastHeight=self.last_height,
            maxProgresses=self.max_progresses,
            verificationFee=self.verification_fee,
            rewardThreshold=self.reward_threshold,
            authorityContract=self.authority_contract,
            progressById=dict(self.progress_by_id),
            progressUpdates=dict(self.progress_updates),
            feeTransfers=list(self.fee_transfers),
        )

    @classmethod
    def from_state(cls, state: LedgerStateModel) -> "ProgressLedger":
        ledger = cls(
            max_progresses=state.maxProgresses,
            verification_fee=state.verificationFee,
            reward_threshold=state.rewardThreshold,
        )
        ledger.revision = state.revision
        ledger.next_progress_id = state.nextProgressId
        ledger.last_height = state.lastHeight
        ledger.authority_contract = state.authorityContract
        for progress_id, record in sorted(state.progressById.items()):
            ledger._write_record(progress_id, record)
        ledger.progress_updates = dict(state.progressUpdates)
        ledger.fee_transfers = list(state.feeTransfers)
        return ledger
