import json

from progress_ledger.utils.apig_utils import (
    ErrorCode,
    create_error_response,
    format_lambda_response,
    get_caller_from_event,
    get_event_body,
    get_height_from_event,
    get_method,
    get_query_string_parameters,
)

ALLOWED_HEADERS = "Content-Type,Authorization,X-Amz-Date,X-Api-Key,X-Amz-Security-Token,X-Ledger-Height"


def test_get_event_body_1() -> None:
    event_body = {"body": "hello everyone"}
    assert get_event_body(event_body) == b"hello everyone"


def test_get_event_body_2() -> None:
    event_body = {
        "body": "aGVsbG8gZXZlcnlvbmU=",
        "isBase64Encoded": True,
    }
    assert get_event_body(event_body) == b"hello everyone"


def test_get_method_1() -> None:
    event = {"requestContext": {"http": {"method": "PUT"}}}
    assert get_method(event) == "PUT"


def test_get_method_2() -> None:
    event = {"requestContext": {}}
    assert get_method(event) == "UNKNOWN"


def test_get_query_string_parameters_tolerate_null() -> None:
    event = {"queryStringParameters": None}
    assert get_query_string_parameters(event) == {}


def test_get_caller_from_event_1() -> None:
    event = {"requestContext": {"authorizer": {"lambda": {"email": "student@example.com", "sub": "ST1TEST"}}}}
    assert get_caller_from_event(event) == "ST1TEST"


def test_get_caller_from_event_2() -> None:
    event = {"requestContext": {}}
    assert get_caller_from_event(event) is None


def test_get_height_from_event() -> None:
    assert get_height_from_event({"headers": {"x-ledger-height": "42"}}) == 42
    assert get_height_from_event({"headers": {"X-Ledger-Height": "7"}}) == 7


def test_get_height_from_event_invalid() -> None:
    assert get_height_from_event({"headers": {}}) is None
    assert get_height_from_event({}) is None
    assert get_height_from_event({"headers": {"x-ledger-height": "soon"}}) is None
    assert get_height_from_event({"headers": {"x-ledger-height": "-1"}}) is None


def test_format_lambda_response_1() -> None:
    ret = format_lambda_response(200, {"hey": "there"})
    assert ret["statusCode"] == 200
    assert len(ret["headers"]) == 4
    assert ret["headers"]["Content-Type"] == "application/json"
    assert ret["headers"]["Access-Control-Allow-Origin"] == "*"
    assert ret["headers"]["Access-Control-Allow-Headers"] == ALLOWED_HEADERS
    assert ret["headers"]["Access-Control-Allow-Methods"] == "OPTIONS,GET,POST,PUT"
    assert ret["body"] == '{"hey": "there"}'


def test_format_lambda_response_2() -> None:
    ret = format_lambda_response(200, None, additional_headers={"hi": "you"})
    assert ret["statusCode"] == 200
    assert len(ret["headers"]) == 5
    assert ret["headers"]["hi"] == "you"
    assert ret["body"] is None


def test_format_lambda_response_3() -> None:
    ret = format_lambda_response(200, {"hey": "there"}, event={"headers": {"origin": "evil.com"}})
    assert ret["headers"]["Access-Control-Allow-Origin"] == "null"
    assert ret["body"] == '{"hey": "there"}'


def test_format_lambda_response_4() -> None:
    ret = format_lambda_response(200, {"hey": "there"}, event={"headers": {"origin": "https://example.github.io"}})
    assert ret["headers"]["Access-Control-Allow-Origin"] == "https://example.github.io"


def test_format_lambda_response_5() -> None:
    ret = format_lambda_response(200, {"hey": "there"}, event={"headers": {"origin": "http://localhost:5173"}})
    assert ret["headers"]["Access-Control-Allow-Origin"] == "http://localhost:5173"


def test_create_error_response_1() -> None:
    response = create_error_response(ErrorCode.VALIDATION_ERROR)

    assert response["statusCode"] == 400
    body = json.loads(response["body"])
    assert body["message"] == "Invalid request data"
    assert body["errorCode"] == "VALIDATION_ERROR"
    assert "details" not in body
    assert "Access-Control-Allow-Origin" in response["headers"]


def test_create_error_response_2() -> None:
    details = {"ledgerError": "INVALID_SCORE", "ledgerErrorCode": 117}
    response = create_error_response(ErrorCode.VALIDATION_ERROR, "Ledger rejected the request", details=details)

    assert response["statusCode"] == 400
    body = json.loads(response["body"])
    assert body["message"] == "Ledger rejected the request"
    assert body["details"] == details


def test_create_error_response_3() -> None:
    event = {"headers": {"origin": "https://test.github.io"}}
    response = create_error_response(ErrorCode.AUTHORIZATION_FAILED, event=event)

    assert response["statusCode"] == 403
    assert response["headers"]["Access-Control-Allow-Origin"] == "https://test.github.io"
    body = json.loads(response["body"])
    assert body["message"] == "Access denied"
    assert body["errorCode"] == "AUTHORIZATION_FAILED"


def test_create_error_response_4() -> None:
    test_cases = [
        (ErrorCode.VALIDATION_ERROR, 400, "VALIDATION_ERROR"),
        (ErrorCode.AUTHENTICATION_FAILED, 401, "AUTHENTICATION_FAILED"),
        (ErrorCode.AUTHORIZATION_FAILED, 403, "AUTHORIZATION_FAILED"),
        (ErrorCode.RESOURCE_NOT_FOUND, 404, "RESOURCE_NOT_FOUND"),
        (ErrorCode.METHOD_NOT_ALLOWED, 405, "METHOD_NOT_ALLOWED"),
        (ErrorCode.CONFLICT, 409, "CONFLICT"),
        (ErrorCode.INTERNAL_ERROR, 500, "INTERNAL_ERROR"),
    ]

    for error_code, expected_status, expected_code_string in test_cases:
        response = create_error_response(error_code)
        assert response["statusCode"] == expected_status
        body = json.loads(response["body"])
        assert body["errorCode"] == expected_code_string
        assert body["message"] == error_code.default_message
