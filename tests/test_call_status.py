import pytest

from app.models.call_log import CallStatus
from app.utils.call_status import normalize_call_status


@pytest.mark.parametrize("raw,expected", [
    ("pickup", CallStatus.ANSWERED),
    ("Connected", CallStatus.ANSWERED),
    ("answer", CallStatus.ANSWERED),
    ("hangup", CallStatus.COMPLETED),
    ("END", CallStatus.COMPLETED),
    ("finished", CallStatus.COMPLETED),
    ("timeout", CallStatus.NO_ANSWER),
    ("noanswer", CallStatus.NO_ANSWER),
    ("no-answer", CallStatus.NO_ANSWER),
    ("reject", CallStatus.FAILED),
    ("declined", CallStatus.FAILED),
    ("unreachable", CallStatus.FAILED),
    ("error", CallStatus.FAILED),
    ("busy", CallStatus.BUSY),
    ("canceled", CallStatus.CANCELLED),
    ("ringing", CallStatus.RINGING),
])
def test_synonyms_map_to_canonical_status(raw, expected):
    assert normalize_call_status(raw) == expected


def test_call_prefixed_event_names():
    assert normalize_call_status("call.completed") == CallStatus.COMPLETED
    assert normalize_call_status("call_answered") == CallStatus.ANSWERED
    assert normalize_call_status("Call Missed") == CallStatus.NO_ANSWER


def test_unknown_status_defaults_to_initiated(caplog):
    assert normalize_call_status("xyz_unexpected") == CallStatus.INITIATED
    assert "xyz_unexpected" in caplog.text


def test_none_and_empty_are_initiated():
    assert normalize_call_status(None) == CallStatus.INITIATED
    assert normalize_call_status("") == CallStatus.INITIATED
