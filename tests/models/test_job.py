"""
Tests for the job envelope and priority helpers.
"""
import pytest

from eventgate.errors import EnvelopeError
from eventgate.models.job import (
    LEGACY_META_KEY,
    JobEnvelope,
    Priority,
    args_fingerprint,
    canonical_json,
)


class TestPriority:

    @pytest.mark.parametrize("value, expected", [
        (-3, Priority.CRITICAL),
        (1, Priority.CRITICAL),
        (3, Priority.NORMAL),
        (9, Priority.MAINTENANCE),
    ])
    def test_clamp(self, value, expected):
        assert Priority.clamp(value) == expected

    def test_groups(self):
        assert [p.group for p in Priority] == ["critical", "urgent", "normal", "bulk", "maintenance"]


class TestJobEnvelope:
    """Test suite for JobEnvelope."""

    def test_wrap_keeps_args_untouched(self):
        args = {"message_id": "wamid.1", "meta": "user field", "version": 7}

        payload = JobEnvelope.wrap(args, Priority.URGENT).to_payload()

        assert payload["version"] == 2
        assert payload["args"] == args
        assert payload["meta"]["priority"] == 2
        assert payload["meta"]["attempt"] == 1
        assert "last_retry" not in payload["meta"]

    def test_unwrap_v2(self):
        payload = {"version": 2, "meta": {"priority": 4, "attempt": 3, "scheduled_at": 1}, "args": {"x": 1}}

        envelope = JobEnvelope.unwrap(payload)

        assert envelope.args == {"x": 1}
        assert envelope.priority == Priority.BULK
        assert envelope.attempt == 3

    def test_unwrap_legacy_inline_meta(self):
        payload = {"x": 1, LEGACY_META_KEY: {"priority": 1, "attempt": 2, "scheduled_at": 1}}

        envelope = JobEnvelope.unwrap(payload)

        assert envelope.args == {"x": 1}
        assert envelope.attempt == 2
        assert envelope.priority == Priority.CRITICAL

    def test_unwrap_plain_map(self):
        envelope = JobEnvelope.unwrap({"x": 1})

        assert envelope.args == {"x": 1}
        assert envelope.attempt == 1
        assert envelope.priority == Priority.NORMAL

    def test_unknown_meta_keys_survive(self):
        envelope = JobEnvelope.wrap({}, circuit_deferrals=4, replayed_from_dlq="17")

        meta = JobEnvelope.unwrap(envelope.to_payload()).meta

        assert meta.model_extra == {"circuit_deferrals": 4, "replayed_from_dlq": "17"}

    @pytest.mark.parametrize("payload", [
        "not a map",
        ["x"],
        {"version": 2, "args": ["x"]},
        {"version": 2, "meta": {"attempt": 0}, "args": {}},
    ])
    def test_invalid_payloads(self, payload):
        with pytest.raises(EnvelopeError):
            JobEnvelope.unwrap(payload)


def test_fingerprint_ignores_key_order():
    assert canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'
    assert args_fingerprint("h", {"a": 1, "b": 2}) == args_fingerprint("h", {"b": 2, "a": 1})
    assert args_fingerprint("h", {"a": 1}) != args_fingerprint("other", {"a": 1})
