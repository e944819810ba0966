"""Durable ledger of webhook processing, one record per provider event.

The ``processing`` record is created with a conditional put before any side
effect runs, so of two concurrent deliveries of the same event exactly one
wins. Records are finalized once and never deleted; they double as the
audit trail of every delivery.
"""

import datetime as dt

from boto3.dynamodb.conditions import Key

from wedly_shared.config import Settings, get_settings
from wedly_shared.models.webhook import IdempotencyRecord, IdempotencyStatus
from wedly_shared.services.dynamodb import DocumentStore, get_document_store
from wedly_shared.utils.logging import get_logger
from wedly_shared.utils.sanitize import sanitize_message

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000


class IdempotencyLedger:
    """Claim, inspect and finalize webhook events.

    Usage:
        ledger = IdempotencyLedger()
        if ledger.check_existing(key) is None and ledger.begin(key, event.id, event.type):
            ...
            ledger.complete(key, IdempotencyStatus.SUCCESS)
    """

    TABLE = "webhook-events"
    STATUS_INDEX = "status-index"

    def __init__(self, store: DocumentStore | None = None, settings: Settings | None = None) -> None:
        self._store = store or get_document_store()
        self._settings = settings or get_settings()

    @property
    def stuck_after(self) -> dt.timedelta:
        return dt.timedelta(minutes=self._settings.stuck_event_minutes)

    def check_existing(self, key: str) -> IdempotencyRecord | None:
        """Read the record for ``key`` without modifying it.

        A record still ``processing`` past the stuck threshold means an
        earlier delivery never finalized; that is logged as CRITICAL.

        Args:
            key: Idempotency key (``webhook_<eventId>``)

        Returns:
            The existing record, or None if the event was never claimed
        """
        item = self._store.get_item(self.TABLE, {"idempotency_key": key})
        if item is None:
            return None

        record = IdempotencyRecord.from_item(item)
        if record.status is IdempotencyStatus.PROCESSING and record.age() > self.stuck_after:
            logger.critical(
                "Webhook event %s stuck in processing since %s",
                record.event_id,
                record.started_at.isoformat(),
                extra={
                    "idempotency_key": key,
                    "event_id": record.event_id,
                    "event_type": record.event_type,
                    "alert": "stuck_webhook_event",
                },
            )
        return record

    def begin(
        self,
        key: str,
        event_id: str,
        event_type: str,
        *,
        payload_hash: str | None = None,
        livemode: bool = False,
    ) -> bool:
        """Create the ``processing`` record if no record exists.

        Args:
            key: Idempotency key
            event_id: Provider event ID
            event_type: Provider event type
            payload_hash: SHA-256 of the raw body, for the audit trail
            livemode: Whether the event came from live mode

        Returns:
            True if this caller claimed the event, False if a record already existed
        """
        record = IdempotencyRecord(
            idempotency_key=key,
            event_id=event_id,
            event_type=event_type,
            status=IdempotencyStatus.PROCESSING,
            started_at=dt.datetime.now(dt.UTC),
            payload_hash=payload_hash,
            livemode=livemode,
        )
        claimed = self._store.put_item(
            self.TABLE,
            record.to_item(),
            condition_expression="attribute_not_exists(idempotency_key)",
        )
        if claimed:
            logger.info("Claimed webhook event %s (%s)", event_id, event_type)
        else:
            logger.warning("Webhook event %s already claimed by another delivery", event_id)
        return claimed

    def complete(
        self,
        key: str,
        status: IdempotencyStatus,
        error_message: str | None = None,
    ) -> bool:
        """Finalize a ``processing`` record.

        Args:
            key: Idempotency key
            status: Final status (success, unsupported_event or error)
            error_message: Failure or note, sanitized before storage

        Returns:
            True if finalized now, False if it was not in ``processing``
        """
        if not status.is_final:
            raise ValueError("complete() needs a final status")

        expression = "SET #status = :status, completed_at = :completed_at"
        values: dict[str, str] = {
            ":status": status.value,
            ":completed_at": dt.datetime.now(dt.UTC).isoformat(),
            ":processing": IdempotencyStatus.PROCESSING.value,
        }
        if error_message:
            expression += ", error_message = :error_message"
            values[":error_message"] = sanitize_message(error_message)[:MAX_ERROR_MESSAGE_LENGTH]

        attrs = self._store.update_item(
            self.TABLE,
            {"idempotency_key": key},
            expression,
            values,
            {"#status": "status"},
            condition_expression="#status = :processing",
        )
        if attrs is None:
            logger.warning("Idempotency record %s was not processing; left unchanged", key)
            return False

        logger.info("Idempotency record %s completed: %s", key, status.value)
        return True

    def find_stuck_records(self, older_than: dt.timedelta | None = None) -> list[IdempotencyRecord]:
        """Records still ``processing`` after ``older_than`` (default: stuck threshold)."""
        cutoff = dt.datetime.now(dt.UTC) - (older_than or self.stuck_after)
        items = self._store.query_by_gsi(
            self.TABLE,
            self.STATUS_INDEX,
            "status",
            IdempotencyStatus.PROCESSING.value,
            Key("started_at").lt(cutoff.isoformat()),
        )
        return [IdempotencyRecord.from_item(item) for item in items]
