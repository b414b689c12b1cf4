"""
Trust Evaluator - decides, per sign-in, whether the request comes from a trusted
environment, a known-but-unverified one, a blocked one, or a new one.
"""
import logging
from typing import Optional

from context_auth.db.fingerprints import FingerprintStore
from context_auth.models.models import Fingerprint, PendingLoginRecord
from context_auth.models.verdicts import (Blocked, InternalError, MismatchDetected, NoCanonicalContext,
                                          Trusted, Verdict)
from context_auth.services.escalation import EscalationPolicy

log = logging.getLogger(__name__)


class TrustEvaluator:
    """
    Only reads the store directly; every mutation goes through the store's
    create call or the escalation policy.
    """

    def __init__(self, store: FingerprintStore, policy: EscalationPolicy):
        self.store = store
        self.policy = policy

    async def evaluate(self, user_id: str, current: Fingerprint, email: Optional[str] = None) -> Verdict:
        """Never raises: storage and decryption failures become InternalError."""
        try:
            return await self._evaluate(user_id, current, email)
        except Exception as e:
            log.error("Context evaluation failed for user %s: %s", user_id, e, exc_info=True)
            return InternalError(f"{type(e).__name__}: {e}")

    async def _evaluate(self, user_id: str, current: Fingerprint, email: Optional[str]) -> Verdict:
        canonical = await self.store.get_canonical_context(user_id)
        if canonical is None:
            log.warning("No canonical context for user %s", user_id)
            return NoCanonicalContext()

        if current == canonical.fingerprint:
            log.debug("Fingerprint matches canonical context for user %s", user_id)
            return Trusted()

        pending = await self.store.find_pending(user_id, current)
        if pending is not None:
            return await self._known_pending(pending)

        record, created = await self.store.get_or_create_pending(user_id, email or canonical.email, current)
        if not created:
            # Lost the creation race; the winner reports the mismatch
            return await self._known_pending(record)

        mismatched = record.fingerprint.mismatched_fields(canonical.fingerprint)
        log.info("New login context for user %s (record %s), mismatched fields: %s",
                 user_id, record.id, ", ".join(mismatched))
        return MismatchDetected(mismatched_fields=mismatched, observed=record)

    async def _known_pending(self, record: PendingLoginRecord) -> Verdict:
        if record.is_blocked:
            log.info("Sign-in from blocked context %s for user %s", record.id, record.user_id)
            return Blocked(record)
        if record.is_trusted:
            return Trusted(record)
        return await self.policy.register_unverified_attempt(record)
