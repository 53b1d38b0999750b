import base64
import enum
import json
import logging
import re
import typing

from progress_ledger.utils.base_types import BlockHeight, Principal

_LOGGER = logging.getLogger(__name__)


QueryParams = typing.NewType("QueryParams", dict[str, str])

HEIGHT_HEADER = "x-ledger-height"


class ErrorCode(enum.Enum):
    """HTTP-level error categories: (status code, default message)."""

    VALIDATION_ERROR = (400, "Invalid request data")
    AUTHENTICATION_FAILED = (401, "User identification failed")
    AUTHORIZATION_FAILED = (403, "Access denied")
    RESOURCE_NOT_FOUND = (404, "Resource not found")
    METHOD_NOT_ALLOWED = (405, "Method not allowed")
    CONFLICT = (409, "Resource already exists")
    INTERNAL_ERROR = (500, "An unexpected error occurred")

    @property
    def status_code(self) -> int:
        return self.value[0]

    @property
    def default_message(self) -> str:
        return self.value[1]


def get_event_body(event: dict) -> bytes:
    if "isBase64Encoded" in event and event["isBase64Encoded"]:
        return base64.b64decode(event["body"])
    else:
        return event["body"].encode("utf-8")


def get_method(event: dict) -> str:
    return event.get("requestContext", {}).get("http", {}).get("method", "UNKNOWN")


def get_path(event: dict) -> str:
    return event.get("requestContext", {}).get("http", {}).get("path", "")


def get_query_string_parameters(event: dict) -> QueryParams:
    return QueryParams(event.get("queryStringParameters") or {})


def get_caller_from_event(event: dict[str, typing.Any]) -> typing.Optional[Principal]:
    """
    Extracts the caller principal from the Lambda event context provided by the custom Lambda Authorizer.
    The authorizer places the decoded JWT payload into the 'lambda' key.
    """
    try:
        caller = event.get("requestContext", {}).get("authorizer", {}).get("lambda", {}).get("sub")
        if caller:
            return Principal(str(caller))

        _LOGGER.warning("Caller ('sub') not found in authorizer's lambda context.")
        return None
    except Exception as e:
        _LOGGER.error("Error extracting caller from event: %s", str(e))
        return None


def get_height_from_event(event: dict[str, typing.Any]) -> typing.Optional[BlockHeight]:
    """
    Reads the current ledger height supplied by the execution environment.
    Header names are matched case-insensitively; a missing or malformed value yields None.
    """
    headers = {str(k).lower(): v for k, v in (event.get("headers") or {}).items()}
    raw_height = headers.get(HEIGHT_HEADER)
    if raw_height is None:
        _LOGGER.warning(f"Header '{HEIGHT_HEADER}' missing from request.")
        return None
    try:
        height = int(raw_height)
    except (ValueError, TypeError):
        _LOGGER.warning(f"Invalid {HEIGHT_HEADER} header: {raw_height}")
        return None
    if height < 0:
        _LOGGER.warning(f"Negative {HEIGHT_HEADER} header: {raw_height}")
        return None
    return BlockHeight(height)


def get_allowed_origin(event: dict[str, typing.Any]) -> str:
    """
    Validates the Origin header against allowed patterns and returns it if valid.

    Allowed Origins:
    - localhost/127.0.0.1 (any port) - for local development
    - *.github.io - for GitHub Pages deployments

    :returns: The origin if valid, otherwise "null" (which causes browser to deny the response)
    """
    origin = (event.get("headers") or {}).get("origin", "")

    # No origin header present (e.g., curl testing, direct API calls)
    if not origin:
        return "*"

    if origin.startswith("http://localhost:") or origin.startswith("http://127.0.0.1:"):
        return origin

    allowed_patterns = [r"^https://.*\.github\.io$"]
    for pattern in allowed_patterns:
        if re.match(pattern, origin):
            return origin

    _LOGGER.warning(f"Origin not in allowed patterns: {origin}")
    return "null"


def format_lambda_response(
    status_code: int,
    body: typing.Any,
    *,
    event: typing.Optional[dict[str, typing.Any]] = None,
    additional_headers: typing.Optional[dict[str, str]] = None,
) -> dict[str, typing.Any]:
    """
    Formats API Gateway proxy responses with CORS headers.
    """
    allowed_origin = get_allowed_origin(event) if event else "*"

    headers = {
        "Content-Type": "application/json",
        "Access-Control-Allow-Origin": allowed_origin,
        "Access-Control-Allow-Headers": "Content-Type,Authorization,X-Amz-Date,X-Api-Key,X-Amz-Security-Token,X-Ledger-Height",
        "Access-Control-Allow-Methods": "OPTIONS,GET,POST,PUT",
    }
    if additional_headers:
        headers.update(additional_headers)

    return {
        "statusCode": status_code,
        "headers": headers,
        "body": json.dumps(body) if body is not None else None,
    }


def create_error_response(
    error_code: ErrorCode,
    message: typing.Optional[str] = None,
    *,
    details: typing.Any = None,
    event: typing.Optional[dict[str, typing.Any]] = None,
) -> dict[str, typing.Any]:
    body: dict[str, typing.Any] = {
        "message": message or error_code.default_message,
        "errorCode": error_code.name,
    }
    if details is not None:
        body["details"] = details
    return format_lambda_response(error_code.status_code, body, event=event)
