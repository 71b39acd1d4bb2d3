"""
Tests for idempotent ingestion of canonical messages.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from smsrelay.errors import StoreError, ValidationError
from smsrelay.events import INGESTED_OK
from smsrelay.ingest import ingest
from smsrelay.models import Event, Message
from smsrelay.schemas import CanonicalMessage


def canonical(**overrides) -> CanonicalMessage:
    fields = {
        "source": "twilio",
        "source_message_id": "SM123",
        "from_address": "+27824537125",
        "body": "help",
        "timestamp": datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return CanonicalMessage(**fields)


class TestIdempotency:

    def test_first_ingest_then_replay(self, db):
        first = ingest(db, canonical())
        second = ingest(db, canonical())

        assert first.idempotent is False
        assert second.idempotent is True
        assert first.stored_id == second.stored_id
        assert db.query(Message).count() == 1

    def test_new_row_writes_one_event(self, db):
        result = ingest(db, canonical())
        ingest(db, canonical())

        events = db.query(Event).filter(Event.type == INGESTED_OK).all()
        assert len(events) == 1
        assert events[0].message_id == result.stored_id
        assert events[0].payload["ingested_ok"] is True

    def test_same_id_from_other_source_is_distinct(self, db):
        twilio = ingest(db, canonical())
        infobip = ingest(db, canonical(source="infobip"))

        assert twilio.stored_id != infobip.stored_id
        assert infobip.idempotent is False

    def test_stored_fields(self, db):
        result = ingest(db, canonical(body="  help  ", to_address="+27110000000"))

        row = db.get(Message, result.stored_id)
        assert row.direction == "inbound"
        assert row.status is None
        assert row.body == "help"
        assert row.to_address == "+27110000000"
        assert row.sent_at == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


class TestValidation:

    @pytest.mark.parametrize("field", ["source", "source_message_id", "from_address", "body", "timestamp"])
    def test_missing_required_field(self, db, field):
        with pytest.raises(ValidationError) as exc:
            ingest(db, canonical(**{field: None}))
        assert exc.value.field == field
        assert exc.value.message == f"Missing required field: {field}"
        assert db.query(Message).count() == 0

    def test_blank_body(self, db):
        with pytest.raises(ValidationError) as exc:
            ingest(db, canonical(body="   "))
        assert exc.value.field == "body"

    def test_body_too_long(self, db):
        with pytest.raises(ValidationError) as exc:
            ingest(db, canonical(body="x" * 1025))
        assert exc.value.field == "body"

    def test_invalid_sender(self, db):
        with pytest.raises(ValidationError) as exc:
            ingest(db, canonical(from_address="0824537125"))
        assert exc.value.field == "from_address"


class TestStoreFailure:

    def test_store_error_is_raised(self, db, monkeypatch):
        def broken_flush(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "flush", broken_flush)

        with pytest.raises(StoreError):
            ingest(db, canonical())
