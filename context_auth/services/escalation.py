"""
Escalation Policy - attempt counting, automatic blocking, and the explicit
trust / block / unblock transitions of pending login records.

State of a pending record:

    awaiting (trusted=0, blocked=0) --attempt #threshold--> blocked
    awaiting --promote--> trusted
    any      --block-->   blocked
    any      --unblock--> trusted

Nothing moves a blocked record except an explicit unblock.
"""
import logging
from typing import Optional

from context_auth.db.fingerprints import FingerprintStore
from context_auth.models.models import PendingLoginRecord
from context_auth.models.verdicts import Blocked, SuspiciousRepeat, Trusted, Verdict
from context_auth.services.audit import (LEVEL_INFO, LEVEL_WARN, LOG_TYPE_CONTEXT_ADMIN, LOG_TYPE_SIGN_IN,
                                         MESSAGE_DEVICE_BLOCKED, SecurityAudit)

log = logging.getLogger(__name__)

DEFAULT_MAX_UNVERIFIED_ATTEMPTS = 3


class EscalationPolicy:
    def __init__(self, store: FingerprintStore, audit: SecurityAudit,
                 max_unverified_attempts: int = DEFAULT_MAX_UNVERIFIED_ATTEMPTS):
        if max_unverified_attempts < 1:
            raise ValueError("max_unverified_attempts must be at least 1")
        self.store = store
        self.audit = audit
        self.max_unverified_attempts = max_unverified_attempts

    async def register_unverified_attempt(self, record: PendingLoginRecord) -> Verdict:
        """
        Count one more sign-in from a record that is still awaiting verification.
        The increment and the threshold check happen in one atomic store update.
        """
        updated = await self.store.record_unverified_attempt(record.id, self.max_unverified_attempts)
        if updated is None:
            # A concurrent request blocked or trusted the record first; its state decides
            current = await self.store.get_pending(record.id)
            if current is None:
                raise LookupError(f"pending record {record.id} disappeared during evaluation")
            if current.is_blocked:
                return Blocked(current)
            if current.is_trusted:
                return Trusted(current)
            raise RuntimeError(f"pending record {record.id} is awaiting verification but was not updated")

        if updated.is_blocked:
            log.warning("Pending record %s for user %s blocked after %d unverified attempts",
                        updated.id, updated.user_id, updated.unverified_attempts)
            await self.audit.record(MESSAGE_DEVICE_BLOCKED, LOG_TYPE_SIGN_IN, LEVEL_WARN,
                                    user_id=updated.user_id, email=updated.email,
                                    fingerprint=updated.fingerprint, record_id=updated.id)
            return Blocked(updated, newly_blocked=True)

        log.info("Pending record %s for user %s: unverified attempt %d of %d",
                 updated.id, updated.user_id, updated.unverified_attempts, self.max_unverified_attempts)
        return SuspiciousRepeat(updated)

    async def _owned(self, record_id: int, user_id: Optional[str]) -> Optional[PendingLoginRecord]:
        record = await self.store.get_pending(record_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            return None
        return record

    async def promote_to_trusted(self, record_id: int, user_id: Optional[str] = None) -> Optional[PendingLoginRecord]:
        """Verification succeeded: trust the record. The canonical context is left alone."""
        if await self._owned(record_id, user_id) is None:
            return None
        record = await self.store.set_pending_flags(record_id, is_trusted=True, is_blocked=False)
        if record is not None:
            log.info("Pending record %s promoted to trusted for user %s", record.id, record.user_id)
        return record

    async def block(self, record_id: int, user_id: Optional[str] = None) -> Optional[PendingLoginRecord]:
        if await self._owned(record_id, user_id) is None:
            return None
        record = await self.store.set_pending_flags(record_id, is_trusted=False, is_blocked=True)
        if record is not None:
            await self.audit.record("Device blocked by account owner", LOG_TYPE_CONTEXT_ADMIN, LEVEL_WARN,
                                    user_id=record.user_id, email=record.email,
                                    fingerprint=record.fingerprint, record_id=record.id)
        return record

    async def unblock(self, record_id: int, user_id: Optional[str] = None) -> Optional[PendingLoginRecord]:
        """Unblocking always implies trusting, so the device is not re-suspected right away."""
        if await self._owned(record_id, user_id) is None:
            return None
        record = await self.store.set_pending_flags(record_id, is_trusted=True, is_blocked=False)
        if record is not None:
            await self.audit.record("Device unblocked by account owner", LOG_TYPE_CONTEXT_ADMIN, LEVEL_INFO,
                                    user_id=record.user_id, email=record.email,
                                    fingerprint=record.fingerprint, record_id=record.id)
        return record

    async def delete(self, record_id: int, user_id: Optional[str] = None) -> bool:
        record = await self._owned(record_id, user_id)
        if record is None:
            return False
        deleted = await self.store.delete_pending(record_id)
        if deleted:
            await self.audit.record("Login context deleted by account owner", LOG_TYPE_CONTEXT_ADMIN, LEVEL_INFO,
                                    user_id=record.user_id, email=record.email,
                                    fingerprint=record.fingerprint, record_id=record.id)
        return deleted
