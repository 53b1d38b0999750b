import json

import pytest
from pydantic import ValidationError

from progress_ledger.models.ledger_result_models import LedgerErrorKind, LedgerResult
from progress_ledger.models.progress_ledger_models import (
    ProgressWithUserModel,
    SubmitProgressInputModel,
    UpdateProgressInputModel,
)


def _record() -> ProgressWithUserModel:
    return ProgressWithUserModel(
        progressHash=bytes([0xAB] * 32),
        milestoneId=1,
        timestamp=0,
        score=85,
        attempts=2,
        level=3,
        difficulty=2,
        expiry=10,
        user="ST1TEST",
        courseId=1,
    )


def test_progress_defaults_to_unverified_and_active():
    record = _record()
    assert record.verified is False
    assert record.status is True


def test_progress_hash_serialized_as_hex_in_json():
    dumped = json.loads(_record().model_dump_json())
    assert dumped["progressHash"] == "ab" * 32


def test_progress_hash_stays_bytes_in_python_dump():
    assert _record().model_dump()["progressHash"] == bytes([0xAB] * 32)


def test_progress_hash_parsed_from_hex():
    restored = ProgressWithUserModel.model_validate(_record().model_dump(mode="json"))
    assert restored == _record()


def test_to_progress_drops_owner_fields():
    progress = _record().to_progress()
    assert "user" not in progress.model_dump()
    assert progress.score == 85


def test_submit_input_accepts_hex_hash_of_any_length():
    # Length is the ledger's concern so it can report INVALID_PROGRESS_HASH.
    body = SubmitProgressInputModel.model_validate_json(
        json.dumps(
            {
                "courseId": 1,
                "progressHash": "01" * 31,
                "milestoneId": 1,
                "score": 85,
                "attempts": 2,
                "level": 3,
                "difficulty": 2,
                "expiry": 10,
            }
        )
    )
    assert len(body.progressHash) == 31


def test_update_input_rejects_non_hex_hash():
    with pytest.raises(ValidationError):
        UpdateProgressInputModel.model_validate({"progressHash": "not-hex", "milestoneId": 2, "score": 90})


def test_update_input_requires_all_fields():
    with pytest.raises(ValidationError):
        UpdateProgressInputModel.model_validate({"progressHash": "02" * 32})


def test_ledger_result_success_and_failure():
    success = LedgerResult.success(3)
    assert success.ok is True
    assert success.value == 3
    assert success.error is None

    failure = LedgerResult.failure(LedgerErrorKind.INVALID_SCORE)
    assert failure.ok is False
    assert failure.value is None
    assert failure.error == LedgerErrorKind.INVALID_SCORE


def test_ledger_error_codes():
    assert LedgerErrorKind.NOT_AUTHORIZED.code == 100
    assert LedgerErrorKind.MAX_PROGRESSES_EXCEEDED.code == 110
    assert LedgerErrorKind.INVALID_UPDATE.code == 112
    assert LedgerErrorKind.INVALID_ATTEMPTS.code == 118
    assert len(LedgerErrorKind) == 16


def test_progress_records_are_immutable():
    record = _record()
    with pytest.raises(ValidationError):
        record.verified = True
    assert record.model_copy(update={"verified": True}).verified is True
    assert record.verified is False
