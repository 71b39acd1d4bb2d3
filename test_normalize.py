"""
Tests for provider payload normalization.
"""

from datetime import datetime, timezone

import pytest

from smsrelay.errors import ValidationError
from smsrelay.normalize import is_valid_e164, normalize_inbound, to_e164


class TestE164:

    @pytest.mark.parametrize("raw,expected", [
        ("+27824537125", "+27824537125"),
        ("27 82-453 7125", "+27824537125"),
        ("(082) 453", "+082453"),
        ("", ""),
        (None, ""),
    ])
    def test_to_e164(self, raw, expected):
        assert to_e164(raw) == expected

    @pytest.mark.parametrize("value,valid", [
        ("+27824537125", True),
        ("+14155550100", True),
        ("27824537125", False),
        ("+0824537125", False),
        ("+1234", False),
        ("+1234567890123456", False),
    ])
    def test_is_valid_e164(self, value, valid):
        assert is_valid_e164(value) is valid


class TestAdapters:

    def test_twilio(self):
        message = normalize_inbound("twilio", {
            "MessageSid": "SM123",
            "From": "+27824537125",
            "To": "+27110000000",
            "Body": "  help ",
            "SmsTimestamp": "2025-01-15T10:00:00Z",
        })
        assert message.source == "twilio"
        assert message.source_message_id == "SM123"
        assert message.from_address == "+27824537125"
        assert message.to_address == "+27110000000"
        assert message.body == "help"
        assert message.timestamp == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert message.meta["original"]["MessageSid"] == "SM123"

    def test_infobip_results_array(self):
        message = normalize_inbound("infobip", {
            "results": [{
                "messageId": "ib-1",
                "from": "27824537125",
                "to": "27110000000",
                "text": "STOP",
                "receivedAt": "2025-01-15T10:00:00.000Z",
            }]
        })
        assert message.source == "infobip"
        assert message.source_message_id == "ib-1"
        assert message.from_address == "+27824537125"

    def test_infobip_without_results(self):
        with pytest.raises(ValidationError) as exc:
            normalize_inbound("infobip", {"results": []})
        assert exc.value.field == "results"

    @pytest.mark.parametrize("provider", ["mtn", "vodacom"])
    def test_operators(self, provider):
        message = normalize_inbound(provider, {
            "id": "op-9",
            "msisdn": "27824537125",
            "text": "balance",
            "shortcode": "31337",
        })
        assert message.source == provider
        assert message.source_message_id == "op-9"
        assert message.meta["shortcode"] == "31337"

    def test_generic(self):
        message = normalize_inbound("generic", {
            "provider_id": "g-1",
            "msisdn": "+27824537125",
            "text": "hi",
            "ts": "2025-01-15T10:00:00+02:00",
        })
        assert message.source_message_id == "g-1"
        assert message.timestamp == datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)

    def test_portal_without_id_gets_stable_key(self):
        payload = {"msisdn": "+27824537125", "text": "hello", "ts": "2025-01-15T10:00:00Z"}
        first = normalize_inbound("portal", payload)
        second = normalize_inbound("portal", dict(payload))
        assert first.source_message_id.startswith("portal-")
        assert first.source_message_id == second.source_message_id

    def test_missing_timestamp_defaults_to_now(self):
        before = datetime.now(timezone.utc)
        message = normalize_inbound("generic", {"provider_id": "g-2", "msisdn": "+27824537125", "text": "x"})
        assert message.timestamp >= before

    def test_long_body_is_capped(self):
        message = normalize_inbound("generic", {"provider_id": "g-3", "msisdn": "+27824537125", "text": "a" * 2000})
        assert len(message.body) == 1024


class TestValidation:

    def test_unknown_provider(self):
        with pytest.raises(ValidationError) as exc:
            normalize_inbound("carrier-pigeon", {})
        assert exc.value.field == "source"

    def test_non_object_payload(self):
        with pytest.raises(ValidationError) as exc:
            normalize_inbound("generic", ["not", "a", "dict"])
        assert exc.value.field == "payload"

    @pytest.mark.parametrize("payload,field", [
        ({"msisdn": "+27824537125", "text": "x"}, "source_message_id"),
        ({"provider_id": "g", "text": "x"}, "from_address"),
        ({"provider_id": "g", "msisdn": "+27824537125"}, "body"),
        ({"provider_id": "g", "msisdn": "+27824537125", "text": "   "}, "body"),
        ({"provider_id": "g", "msisdn": "123", "text": "x"}, "from_address"),
        ({"provider_id": "g", "msisdn": "+27824537125", "text": "x", "ts": "yesterday"}, "timestamp"),
        ({"provider_id": {"sid": "g"}, "msisdn": "+27824537125", "text": "x"}, "source_message_id"),
        ({"provider_id": ["g"], "msisdn": "+27824537125", "text": "x"}, "source_message_id"),
        ({"provider_id": True, "msisdn": "+27824537125", "text": "x"}, "source_message_id"),
    ])
    def test_missing_or_bad_field_is_named(self, payload, field):
        with pytest.raises(ValidationError) as exc:
            normalize_inbound("generic", payload)
        assert exc.value.field == field

    def test_integer_provider_id_is_accepted(self):
        message = normalize_inbound("generic", {"provider_id": 4711, "msisdn": "+27824537125", "text": "x"})
        assert message.source_message_id == "4711"
