"""
Storage operations for the outbox table.

Claiming is the only synchronization point between processor instances. A claim runs
in one transaction:

1. select eligible rows ordered by id with FOR UPDATE SKIP LOCKED (ignored on backends
   without row locks, e.g. SQLite, where writers are serialized anyway);
2. conditionally stamp them with a claim token and lease, re-checking eligibility in the
   UPDATE itself so two claimants can never both win the same row;
3. read back the rows carrying this call's token.

Every state change after a claim also goes through this module.
"""
import logging
import os
import socket
import uuid
from datetime import timedelta
from typing import Iterable, List, Optional

from tortoise import connections
from tortoise.exceptions import BaseORMException
from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from fitness_outbox.core.clock import Clock, SystemClock
from fitness_outbox.core.errors import StorageFailure
from fitness_outbox.models.outbox import LAST_ERROR_MAX_LENGTH, OutboxMessage

log = logging.getLogger(__name__)

STORAGE_ERRORS = (BaseORMException, OSError)


def default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"[-64:]


def truncate_error(error: str) -> str:
    return error[:LAST_ERROR_MAX_LENGTH]


class OutboxClaimStore:
    """Claims, outcome writes and read-only operator queries for OutboxMessage rows."""

    def __init__(
        self,
        max_retry_attempts: int,
        lease_seconds: int,
        instance_id: Optional[str] = None,
        clock: Optional[Clock] = None,
        connection_name: Optional[str] = None,
    ):
        self.max_retry_attempts = max_retry_attempts
        self.lease = timedelta(seconds=lease_seconds)
        self.instance_id = (instance_id or default_instance_id())[:64]
        self.clock = clock or SystemClock()
        self.connection_name = connection_name

    def _db(self):
        # None falls back to the model's default connection
        return connections.get(self.connection_name) if self.connection_name else None

    def _eligible(self, now):
        return OutboxMessage.filter(
            Q(lease_until__isnull=True) | Q(lease_until__lte=now),
            processed=False,
            retry_count__lt=self.max_retry_attempts,
        )

    async def claim_batch(self, max_batch_size: int) -> List[OutboxMessage]:
        """
        Claims up to `max_batch_size` pending messages for this instance, oldest id first.
        Returns an empty list when nothing is eligible.
        """
        if max_batch_size <= 0:
            return []
        now = self.clock.now()
        token = uuid.uuid4().hex
        try:
            async with in_transaction(self.connection_name) as conn:
                candidates = await (
                    self._eligible(now)
                    .order_by("id")
                    .limit(max_batch_size)
                    .select_for_update(skip_locked=True)
                    .using_db(conn)
                )
                if not candidates:
                    return []

                # Eligibility is repeated here: a row another claimant stamped in the
                # meantime no longer matches and is left alone.
                await (
                    self._eligible(now)
                    .filter(id__in=[m.id for m in candidates])
                    .using_db(conn)
                    .update(claim_token=token, locked_by=self.instance_id, lease_until=now + self.lease)
                )
                batch = await OutboxMessage.filter(claim_token=token).order_by("id").using_db(conn)
        except STORAGE_ERRORS as e:
            raise StorageFailure(f"Claiming outbox batch failed: {e}") from e

        if batch:
            log.debug(
                "Claimed outbox batch",
                extra={"instance_id": self.instance_id, "claimed": len(batch), "first_id": batch[0].id},
            )
        return list(batch)

    def _held_by(self, message: OutboxMessage):
        if message.claim_token is None:
            query = OutboxMessage.filter(id=message.id, claim_token__isnull=True)
        else:
            query = OutboxMessage.filter(id=message.id, claim_token=message.claim_token)
        return query.using_db(self._db())

    async def renew_claim(self, message: OutboxMessage) -> bool:
        """
        Confirms this instance still holds a live claim on `message` and extends its lease.
        False when the lease ran out, another instance took the message over, or it was
        processed or quarantined in the meantime. Handlers must not run in that case.
        """
        if message.claim_token is None:
            return False
        now = self.clock.now()
        lease_until = now + self.lease
        try:
            renewed = await self._held_by(message).filter(
                processed=False,
                retry_count__lt=self.max_retry_attempts,
                lease_until__gt=now,
            ).update(lease_until=lease_until)
        except STORAGE_ERRORS as e:
            raise StorageFailure(f"Renewing claim on outbox message {message.id} failed: {e}") from e

        if not renewed:
            log.warning(
                "Outbox claim no longer held, skipping delivery",
                extra={"message_id": message.id, "event_id": message.event_id, "instance_id": self.instance_id},
            )
            return False
        message.lease_until = lease_until
        return True

    async def mark_delivered(self, message: OutboxMessage) -> bool:
        """
        Flips the message to processed. A no-op (returns False) if it already was, or if
        the claim was lost to another instance in the meantime. retry_count is left unchanged.
        """
        now = self.clock.now()
        try:
            updated = await self._held_by(message).filter(processed=False).update(
                processed=True,
                processed_at=now,
                claim_token=None,
                locked_by=None,
                lease_until=None,
            )
        except STORAGE_ERRORS as e:
            raise StorageFailure(f"Marking outbox message {message.id} delivered failed: {e}") from e

        if updated:
            message.processed = True
            message.processed_at = now
            message.claim_token = None
            message.locked_by = None
            message.lease_until = None
        return bool(updated)

    async def mark_failed(self, message: OutboxMessage, error: str, retry_count: int) -> bool:
        """
        Records a failed attempt and releases the claim. `retry_count` is the new total;
        it is never allowed to go below the stored value. Returns False when the claim
        was lost to another instance (its lease expired), in which case nothing is written.
        """
        new_count = max(retry_count, message.retry_count)
        last_error = truncate_error(error)
        try:
            updated = await self._held_by(message).filter(
                processed=False, retry_count=message.retry_count
            ).update(
                retry_count=new_count,
                last_error=last_error,
                claim_token=None,
                locked_by=None,
                lease_until=None,
            )
        except STORAGE_ERRORS as e:
            raise StorageFailure(f"Recording failure for outbox message {message.id} failed: {e}") from e

        if not updated:
            log.warning(
                "Outbox claim lost before failure could be recorded",
                extra={"message_id": message.id, "event_id": message.event_id, "instance_id": self.instance_id},
            )
            return False
        message.retry_count = new_count
        message.last_error = last_error
        message.claim_token = None
        message.locked_by = None
        message.lease_until = None
        return True

    async def release(self, messages: Iterable[OutboxMessage]) -> int:
        """Gives back claims on messages this instance did not get to, leaving them as before the claim."""
        messages = [m for m in messages if m.claim_token is not None and not m.processed]
        if not messages:
            return 0
        released = 0
        try:
            for message in messages:
                released += await self._held_by(message).filter(processed=False).update(
                    claim_token=None, locked_by=None, lease_until=None
                )
        except STORAGE_ERRORS as e:
            raise StorageFailure(f"Releasing outbox claims failed: {e}") from e
        for message in messages:
            message.claim_token = None
            message.locked_by = None
            message.lease_until = None
        return released

    # ----------- Read-only operator queries -----------

    async def count_pending(self) -> int:
        try:
            return await (
                OutboxMessage.filter(processed=False, retry_count__lt=self.max_retry_attempts)
                .using_db(self._db())
                .count()
            )
        except STORAGE_ERRORS as e:
            raise StorageFailure(f"Counting pending outbox messages failed: {e}") from e

    async def count_quarantined(self) -> int:
        try:
            return await (
                OutboxMessage.filter(processed=False, retry_count__gte=self.max_retry_attempts)
                .using_db(self._db())
                .count()
            )
        except STORAGE_ERRORS as e:
            raise StorageFailure(f"Counting quarantined outbox messages failed: {e}") from e

    async def list_quarantined(self, limit: int = 100) -> List[OutboxMessage]:
        try:
            return await (
                OutboxMessage.filter(processed=False, retry_count__gte=self.max_retry_attempts)
                .order_by("id")
                .limit(limit)
                .using_db(self._db())
            )
        except STORAGE_ERRORS as e:
            raise StorageFailure(f"Listing quarantined outbox messages failed: {e}") from e

    async def get(self, message_id: int) -> Optional[OutboxMessage]:
        try:
            return await OutboxMessage.get_or_none(id=message_id, using_db=self._db())
        except STORAGE_ERRORS as e:
            raise StorageFailure(f"Loading outbox message {message_id} failed: {e}") from e
