import json
import logging

import pytest

from assessment_errors import InvalidResponse
from logging_setup import (
    AssessmentContextFilter,
    JsonFormatter,
    assessment_context,
    current_assessment_id,
)
from settings import Settings


def _record(msg="hello", **extra):
    record = logging.LogRecord("scoring", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_assessment_context_nests_and_resets():
    assert current_assessment_id() is None
    with assessment_context(1):
        with assessment_context(2):
            assert current_assessment_id() == 2
        assert current_assessment_id() == 1
    assert current_assessment_id() is None


def test_json_formatter_includes_context_and_extras():
    record = _record(actor="ops", reason={"why": "fix"})
    with assessment_context(42):
        AssessmentContextFilter().filter(record)

    payload = json.loads(JsonFormatter().format(record))
    assert payload["msg"] == "hello"
    assert payload["level"] == "INFO"
    assert payload["assessment_id"] == 42
    assert payload["actor"] == "ops"
    assert payload["reason"] == {"why": "fix"}


def test_error_payload_shape():
    err = InvalidResponse("Rating 9 is outside [1, 5]", {"rating": 9})
    assert err.to_dict() == {
        "error": {"code": "invalid_response", "message": "Rating 9 is outside [1, 5]",
                  "details": {"rating": 9}},
    }


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("CATALYST_GAP_THRESHOLD", "0,75")
    monkeypatch.setenv("CATALYST_TOP_N", "3")
    monkeypatch.setenv("CATALYST_LOG_JSON", "yes")
    monkeypatch.setenv("CATALYST_ANONYMITY_THRESHOLD", "not-a-number")

    config = Settings()
    assert config.gap_threshold == 0.75
    assert config.top_n == 3
    assert config.log_json is True
    assert config.anonymity_threshold == 3


def test_settings_overrides():
    config = Settings(db_path=":memory:")
    assert config.as_dict()["db_path"] == ":memory:"
    with pytest.raises(AttributeError):
        Settings(colour="green")
