"""Unit tests for the webhook idempotency ledger (moto-backed DynamoDB)."""

import datetime as dt
import logging

import pytest

from wedly_shared.models.webhook import IdempotencyStatus, idempotency_key_for
from wedly_shared.services.idempotency import IdempotencyLedger

TABLE = "test-wedly-webhook-events"


@pytest.fixture
def ledger(tables) -> IdempotencyLedger:
    return IdempotencyLedger()


def _put_processing(tables, key: str, started_at: dt.datetime) -> None:
    tables.Table(TABLE).put_item(
        Item={
            "idempotency_key": key,
            "event_id": key.removeprefix("webhook_"),
            "event_type": "checkout.session.completed",
            "status": "processing",
            "started_at": started_at.isoformat(),
            "livemode": False,
        }
    )


class TestKeys:
    def test_key_format(self):
        assert idempotency_key_for("evt_1") == "webhook_evt_1"

    def test_final_statuses(self):
        assert not IdempotencyStatus.PROCESSING.is_final
        assert IdempotencyStatus.SUCCESS.is_final
        assert IdempotencyStatus.UNSUPPORTED_EVENT.is_final
        assert IdempotencyStatus.ERROR.is_final


class TestBegin:
    def test_first_claim_wins(self, ledger: IdempotencyLedger, tables):
        assert ledger.begin("webhook_evt_1", "evt_1", "checkout.session.completed", payload_hash="abc") is True
        assert ledger.begin("webhook_evt_1", "evt_1", "checkout.session.completed") is False

        item = tables.Table(TABLE).get_item(Key={"idempotency_key": "webhook_evt_1"})["Item"]
        assert item["status"] == "processing"
        assert item["payload_hash"] == "abc"

    def test_check_existing(self, ledger: IdempotencyLedger):
        assert ledger.check_existing("webhook_evt_1") is None

        ledger.begin("webhook_evt_1", "evt_1", "checkout.session.completed")
        record = ledger.check_existing("webhook_evt_1")

        assert record is not None
        assert record.event_id == "evt_1"
        assert record.status is IdempotencyStatus.PROCESSING


class TestComplete:
    def test_completes_exactly_once(self, ledger: IdempotencyLedger, tables):
        ledger.begin("webhook_evt_1", "evt_1", "checkout.session.completed")

        assert ledger.complete("webhook_evt_1", IdempotencyStatus.SUCCESS) is True
        assert ledger.complete("webhook_evt_1", IdempotencyStatus.ERROR, "late failure") is False

        item = tables.Table(TABLE).get_item(Key={"idempotency_key": "webhook_evt_1"})["Item"]
        assert item["status"] == "success"
        assert "completed_at" in item
        assert "error_message" not in item

    def test_error_message_is_sanitized_and_truncated(self, ledger: IdempotencyLedger, tables):
        ledger.begin("webhook_evt_1", "evt_1", "checkout.session.completed")

        ledger.complete(
            "webhook_evt_1",
            IdempotencyStatus.ERROR,
            "Failed for a@example.com " + "retry " * 400,
        )

        item = tables.Table(TABLE).get_item(Key={"idempotency_key": "webhook_evt_1"})["Item"]
        assert item["status"] == "error"
        assert item["error_message"].startswith("Failed for [email]")
        assert len(item["error_message"]) == 1000

    def test_missing_record_is_not_created(self, ledger: IdempotencyLedger, tables):
        assert ledger.complete("webhook_evt_9", IdempotencyStatus.SUCCESS) is False

        assert "Item" not in tables.Table(TABLE).get_item(Key={"idempotency_key": "webhook_evt_9"})

    def test_processing_is_not_a_final_status(self, ledger: IdempotencyLedger):
        with pytest.raises(ValueError):
            ledger.complete("webhook_evt_1", IdempotencyStatus.PROCESSING)


class TestStuckRecords:
    def test_stuck_record_logs_critical(self, ledger: IdempotencyLedger, tables, caplog):
        _put_processing(tables, "webhook_evt_old", dt.datetime.now(dt.UTC) - dt.timedelta(minutes=30))

        with caplog.at_level(logging.CRITICAL, logger="wedly_shared.services.idempotency"):
            record = ledger.check_existing("webhook_evt_old")

        assert record is not None
        stuck = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(stuck) == 1
        assert stuck[0].alert == "stuck_webhook_event"

    def test_recent_processing_record_is_not_stuck(self, ledger: IdempotencyLedger, tables, caplog):
        _put_processing(tables, "webhook_evt_new", dt.datetime.now(dt.UTC) - dt.timedelta(minutes=1))

        with caplog.at_level(logging.CRITICAL, logger="wedly_shared.services.idempotency"):
            ledger.check_existing("webhook_evt_new")

        assert not [r for r in caplog.records if r.levelno == logging.CRITICAL]

    def test_find_stuck_records(self, ledger: IdempotencyLedger, tables):
        now = dt.datetime.now(dt.UTC)
        _put_processing(tables, "webhook_evt_old", now - dt.timedelta(minutes=30))
        _put_processing(tables, "webhook_evt_new", now - dt.timedelta(minutes=1))
        ledger.begin("webhook_evt_done", "evt_done", "checkout.session.completed")
        ledger.complete("webhook_evt_done", IdempotencyStatus.SUCCESS)

        stuck = ledger.find_stuck_records()

        assert [r.event_id for r in stuck] == ["evt_old"]
