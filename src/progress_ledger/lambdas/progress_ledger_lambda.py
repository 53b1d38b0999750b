import logging
import re
import typing

from pydantic import BaseModel, ValidationError

from progress_ledger.dynamodb.progress_ledger_table import LedgerConflictError, ProgressLedgerTable
from progress_ledger.ledger.progress_ledger import ProgressLedger
from progress_ledger.models.ledger_result_models import LedgerErrorKind, LedgerResult
from progress_ledger.models.progress_ledger_models import (
    RequestContext,
    SetAuthorityInputModel,
    SetRewardThresholdInputModel,
    SetVerificationFeeInputModel,
    SubmitProgressInputModel,
    UpdateProgressInputModel,
    VerifyProgressInputModel,
)
from progress_ledger.utils.apig_utils import (
    HEIGHT_HEADER,
    ErrorCode,
    create_error_response,
    format_lambda_response,
    get_caller_from_event,
    get_event_body,
    get_height_from_event,
    get_method,
    get_path,
    get_query_string_parameters,
)
from progress_ledger.utils.aws_env_vars import (
    get_default_reward_threshold,
    get_default_verification_fee,
    get_max_progresses,
    get_progress_ledger_id,
    get_progress_ledger_table_name,
)
from progress_ledger.utils.base_types import CourseId, LedgerId, Principal, ProgressId

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

ModelT = typing.TypeVar("ModelT", bound=BaseModel)

_PROGRESS_ID_PATH = re.compile(r"^/progress/(\d+)$")
_VERIFY_PATH = re.compile(r"^/progress/(\d+)/verify$")
_FIXED_PATHS = {
    "/ledger/authority",
    "/ledger/verification-fee",
    "/ledger/reward-threshold",
    "/progress",
    "/progress/count",
    "/progress/exists",
}

_LEDGER_ERROR_TO_HTTP = {
    LedgerErrorKind.NOT_AUTHORIZED: ErrorCode.AUTHORIZATION_FAILED,
    LedgerErrorKind.PROGRESS_NOT_FOUND: ErrorCode.RESOURCE_NOT_FOUND,
    LedgerErrorKind.PROGRESS_ALREADY_EXISTS: ErrorCode.CONFLICT,
}


class RequestBodyError(ValueError):
    def __init__(self, message: str, details: typing.Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


def _parse_body(event: dict, model_cls: type[ModelT]) -> ModelT:
    raw_body = event.get("body")
    if not raw_body:
        raise RequestBodyError("Request body is missing.")
    try:
        body = get_event_body(event)
    except ValueError as e:
        raise RequestBodyError("Request body could not be decoded.") from e
    try:
        return model_cls.model_validate_json(body)
    except ValidationError as e:
        raise RequestBodyError(
            "Invalid request body.", details=e.errors(include_url=False, include_context=False, include_input=False)
        ) from e


class ProgressLedgerApiHandler:
    """
    Serves the progress ledger over an API Gateway HTTP API.

    Each request loads the stored snapshot, applies one ledger operation and saves the
    touched items. The first authenticated caller to POST /ledger/authority becomes the
    authority; after that only the authority may change the fee or the reward threshold.
    """

    def __init__(self, progress_ledger_table: ProgressLedgerTable, ledger_id: LedgerId):
        self.progress_ledger_table = progress_ledger_table
        self.ledger_id = ledger_id

    def _load_ledger(self) -> ProgressLedger:
        state = self.progress_ledger_table.load_ledger_state(self.ledger_id)
        if state is None:
            _LOGGER.info(f"Starting new ledger for ledger_id: {self.ledger_id}")
            return ProgressLedger(
                max_progresses=get_max_progresses(),
                verification_fee=get_default_verification_fee(),
                reward_threshold=get_default_reward_threshold(),
            )
        return ProgressLedger.from_state(state)

    def _ledger_error_response(self, result: LedgerResult, event: dict) -> dict:
        error = typing.cast(LedgerErrorKind, result.error)
        http_error = _LEDGER_ERROR_TO_HTTP.get(error, ErrorCode.VALIDATION_ERROR)
        return create_error_response(
            http_error,
            f"Ledger rejected the request: {error.name}",
            details={"ledgerError": error.name, "ledgerErrorCode": error.code},
            event=event,
        )

    def _request_context(self, event: dict, caller: Principal) -> typing.Optional[RequestContext]:
        height = get_height_from_event(event)
        if height is None:
            return None
        return RequestContext(caller=caller, height=height)

    # --- Administration ---

    def _handle_set_authority(self, event: dict) -> dict:
        body = _parse_body(event, SetAuthorityInputModel)
        ledger = self._load_ledger()
        result = ledger.set_authority_contract(body.authority)
        if not result.ok:
            return self._ledger_error_response(result, event)
        self.progress_ledger_table.save_ledger_changes(self.ledger_id, ledger)
        return format_lambda_response(200, {"authorityContract": ledger.authority_contract}, event=event)

    def _check_administrator(self, ledger: ProgressLedger, caller: Principal, event: dict) -> typing.Optional[dict]:
        if ledger.authority_contract is not None and caller != ledger.authority_contract:
            _LOGGER.warning(f"Caller {caller} is not the ledger authority {ledger.authority_contract}.")
            return self._ledger_error_response(LedgerResult.failure(LedgerErrorKind.NOT_AUTHORIZED), event)
        return None

    def _handle_set_verification_fee(self, event: dict, caller: Principal) -> dict:
        body = _parse_body(event, SetVerificationFeeInputModel)
        ledger = self._load_ledger()
        forbidden = self._check_administrator(ledger, caller, event)
        if forbidden:
            return forbidden
        result = ledger.set_verification_fee(body.amount)
        if not result.ok:
            return self._ledger_error_response(result, event)
        self.progress_ledger_table.save_ledger_changes(self.ledger_id, ledger)
        return format_lambda_response(200, {"verificationFee": ledger.verification_fee}, event=event)

    def _handle_set_reward_threshold(self, event: dict, caller: Principal) -> dict:
        body = _parse_body(event, SetRewardThresholdInputModel)
        ledger = self._load_ledger()
        forbidden = self._check_administrator(ledger, caller, event)
        if forbidden:
            return forbidden
        result = ledger.set_reward_threshold(body.threshold)
        if not result.ok:
            return self._ledger_error_response(result, event)
        self.progress_ledger_table.save_ledger_changes(self.ledger_id, ledger)
        return format_lambda_response(200, {"rewardThreshold": ledger.reward_threshold}, event=event)

    # --- Record lifecycle ---

    def _handle_submit(self, event: dict, ctx: RequestContext) -> dict:
        body = _parse_body(event, SubmitProgressInputModel)
        ledger = self._load_ledger()
        result = ledger.submit_progress(
            ctx,
            course_id=body.courseId,
            progress_hash=body.progressHash,
            milestone_id=body.milestoneId,
            score=body.score,
            attempts=body.attempts,
            level=body.level,
            difficulty=body.difficulty,
            expiry=body.expiry,
        )
        if not result.ok:
            return self._ledger_error_response(result, event)

        progress_id = typing.cast(ProgressId, result.value)
        fee_transfers = ledger.drain_fee_transfers()
        self.progress_ledger_table.save_ledger_changes(
            self.ledger_id, ledger, progress_id=progress_id, fee_transfers=fee_transfers, new_record=True
        )
        response_body = {
            "progressId": progress_id,
            "feeTransfers": [transfer.model_dump(mode="json") for transfer in fee_transfers],
        }
        return format_lambda_response(201, response_body, event=event)

    def _handle_verify(self, event: dict, ctx: RequestContext, progress_id: ProgressId) -> dict:
        body = _parse_body(event, VerifyProgressInputModel)
        ledger = self._load_ledger()
        result = ledger.verify_progress(ctx, progress_id, body.verifier)
        if not result.ok:
            return self._ledger_error_response(result, event)
        self.progress_ledger_table.save_ledger_changes(self.ledger_id, ledger, progress_id=progress_id)
        return format_lambda_response(200, {"progressId": progress_id, "verified": True}, event=event)

    def _handle_update(self, event: dict, ctx: RequestContext, progress_id: ProgressId) -> dict:
        body = _parse_body(event, UpdateProgressInputModel)
        ledger = self._load_ledger()
        result = ledger.update_progress(ctx, progress_id, body.progressHash, body.milestoneId, body.score)
        if not result.ok:
            return self._ledger_error_response(result, event)
        self.progress_ledger_table.save_ledger_changes(self.ledger_id, ledger, progress_id=progress_id)
        record = ledger.get_progress_by_id(progress_id)
        return format_lambda_response(200, record.model_dump(mode="json") if record else None, event=event)

    # --- Queries ---

    def _handle_get_by_id(self, event: dict, progress_id: ProgressId) -> dict:
        record = self._load_ledger().get_progress_by_id(progress_id)
        if record is None:
            return create_error_response(ErrorCode.RESOURCE_NOT_FOUND, f"Progress {progress_id} not found.", event=event)
        return format_lambda_response(200, record.model_dump(mode="json"), event=event)

    def _handle_get_by_user_and_course(self, event: dict, caller: Principal) -> dict:
        query_params = get_query_string_parameters(event)
        course_id = self._course_id_from_query(query_params)
        if course_id is None:
            return create_error_response(ErrorCode.VALIDATION_ERROR, "Query parameter 'courseId' is required.", event=event)
        user = Principal(query_params.get("userId") or caller)

        record = self._load_ledger().get_progress(user, course_id)
        if record is None:
            return create_error_response(
                ErrorCode.RESOURCE_NOT_FOUND, f"No progress for user {user} in course {course_id}.", event=event
            )
        return format_lambda_response(200, record.model_dump(mode="json"), event=event)

    def _handle_get_count(self, event: dict) -> dict:
        result = self._load_ledger().get_progress_count()
        return format_lambda_response(200, {"count": result.value}, event=event)

    def _handle_get_exists(self, event: dict, caller: Principal) -> dict:
        course_id = self._course_id_from_query(get_query_string_parameters(event))
        if course_id is None:
            return create_error_response(ErrorCode.VALIDATION_ERROR, "Query parameter 'courseId' is required.", event=event)
        result = self._load_ledger().check_progress_existence(caller, course_id)
        return format_lambda_response(200, {"courseId": course_id, "exists": result.value}, event=event)

    def _course_id_from_query(self, query_params: dict[str, str]) -> typing.Optional[CourseId]:
        raw_course_id = query_params.get("courseId")
        if raw_course_id is None:
            return None
        try:
            return CourseId(int(raw_course_id))
        except (ValueError, TypeError):
            _LOGGER.warning(f"Invalid courseId query param: {raw_course_id}")
            return None

    def _route(self, event: dict, caller: Principal, http_method: str, path: str) -> dict:
        if http_method == "GET":
            if path == "/progress":
                return self._handle_get_by_user_and_course(event, caller)
            if path == "/progress/count":
                return self._handle_get_count(event)
            if path == "/progress/exists":
                return self._handle_get_exists(event, caller)
            match = _PROGRESS_ID_PATH.match(path)
            if match:
                return self._handle_get_by_id(event, ProgressId(int(match.group(1))))

        if http_method == "POST" and path == "/ledger/authority":
            return self._handle_set_authority(event)
        if http_method == "PUT" and path == "/ledger/verification-fee":
            return self._handle_set_verification_fee(event, caller)
        if http_method == "PUT" and path == "/ledger/reward-threshold":
            return self._handle_set_reward_threshold(event, caller)

        verify_match = _VERIFY_PATH.match(path) if http_method == "POST" else None
        update_match = _PROGRESS_ID_PATH.match(path) if http_method == "PUT" else None
        is_submit = http_method == "POST" and path == "/progress"
        if not (verify_match or update_match or is_submit):
            if path in _FIXED_PATHS or _PROGRESS_ID_PATH.match(path) or _VERIFY_PATH.match(path):
                _LOGGER.warning(f"Method {http_method} not allowed on {path}")
                return create_error_response(ErrorCode.METHOD_NOT_ALLOWED, event=event)
            _LOGGER.warning(f"Unsupported path for Progress Ledger: {http_method} {path}")
            return create_error_response(ErrorCode.RESOURCE_NOT_FOUND, event=event)

        ctx = self._request_context(event, caller)
        if ctx is None:
            return create_error_response(
                ErrorCode.VALIDATION_ERROR, f"Missing or invalid '{HEIGHT_HEADER}' header.", event=event
            )
        if verify_match:
            return self._handle_verify(event, ctx, ProgressId(int(verify_match.group(1))))
        if update_match:
            return self._handle_update(event, ctx, ProgressId(int(update_match.group(1))))
        return self._handle_submit(event, ctx)

    def handle(self, event: dict) -> dict:
        caller = get_caller_from_event(event)
        if not caller:
            return create_error_response(ErrorCode.AUTHENTICATION_FAILED, event=event)

        http_method = get_method(event).upper()
        path = get_path(event)

        _LOGGER.info(f"ProgressLedgerApiHandler: {http_method} {path} for caller: {caller}")

        try:
            return self._route(event, caller, http_method, path)
        except RequestBodyError as e:
            _LOGGER.error(f"Request body rejected for {http_method} {path}: {e.message}")
            return create_error_response(ErrorCode.VALIDATION_ERROR, e.message, details=e.details, event=event)
        except LedgerConflictError as e:
            _LOGGER.warning(f"Concurrent write rejected for {http_method} {path}: {str(e)}")
            return create_error_response(
                ErrorCode.CONFLICT, "Ledger changed while the request was processed. Retry the request.", event=event
            )
        except Exception as e:
            _LOGGER.error(f"Unexpected error in ProgressLedgerApiHandler for caller {caller}: {str(e)}", exc_info=True)
            return create_error_response(ErrorCode.INTERNAL_ERROR, event=event)


def progress_ledger_lambda_handler(event: dict[str, typing.Any], context: typing.Any) -> dict[str, typing.Any]:
    _LOGGER.debug("Global progress_ledger_lambda_handler received event.")

    try:
        api_handler = ProgressLedgerApiHandler(
            progress_ledger_table=ProgressLedgerTable(get_progress_ledger_table_name()),
            ledger_id=LedgerId(get_progress_ledger_id()),
        )
        return api_handler.handle(event)

    except ValueError as ve:
        _LOGGER.critical(f"Configuration error in progress_ledger_lambda_handler: {str(ve)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR, "Server configuration error")
    except Exception as e:
        _LOGGER.critical(f"Error during ProgressLedgerApiHandler: {str(e)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR)
