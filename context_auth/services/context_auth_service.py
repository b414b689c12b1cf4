"""
Context Auth Service - entry point used by the sign-in, email verification and
account settings flows. Wires extractor, store, evaluator and escalation policy.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import Request

from context_auth.db.fingerprints import DuplicateRecordError, FingerprintStore
from context_auth.models.models import CanonicalContext, Fingerprint, PendingLoginRecord
from context_auth.models.verdicts import (Blocked, InternalError, MismatchDetected, NoCanonicalContext,
                                          SignInDecision, SuspiciousRepeat, decision_for)
from context_auth.services.audit import LEVEL_ERROR, LEVEL_WARN, LOG_TYPE_SIGN_IN, SecurityAudit
from context_auth.services.context_extractor import fingerprint_from_request
from context_auth.services.escalation import EscalationPolicy
from context_auth.services.trust_evaluator import TrustEvaluator
from context_auth.utils.crypto import FieldCipher
from context_auth.utils.geolocation import GeolocationService
from context_auth.utils.helpers import format_created_at

log = logging.getLogger(__name__)


def _context_item(record: PendingLoginRecord) -> Dict[str, Any]:
    return {"_id": record.id, "time": format_created_at(record.created_at), **record.fingerprint.to_public_dict()}


class ContextAuthService:
    def __init__(self, store: FingerprintStore, geolocation: Optional[GeolocationService] = None,
                 max_unverified_attempts: int = 3):
        self.store = store
        self.geolocation = geolocation
        self.audit = SecurityAudit(store)
        self.policy = EscalationPolicy(store, self.audit, max_unverified_attempts)
        self.evaluator = TrustEvaluator(store, self.policy)

    @classmethod
    def from_settings(cls, settings) -> "ContextAuthService":
        store = FingerprintStore(settings.db_path, FieldCipher.from_settings(settings))
        return cls(store, GeolocationService.from_settings(settings), settings.max_unverified_attempts)

    async def init(self):
        await self.store.init()

    async def close(self):
        await self.store.close()

    async def fingerprint(self, req: Request) -> Fingerprint:
        geolocate = self.geolocation.get_ip_geolocation if self.geolocation else None
        return await fingerprint_from_request(req, geolocate)

    # --- sign-in ---------------------------------------------------------------

    async def check_sign_in(self, user_id: str, req: Request, email: Optional[str] = None) -> SignInDecision:
        """
        Evaluate an already password-authenticated sign-in request and map the
        verdict to what the sign-in flow should answer.
        """
        current = await self.fingerprint(req)
        verdict = await self.evaluator.evaluate(user_id, current, email)
        decision = decision_for(verdict)

        if isinstance(verdict, Blocked):
            if verdict.newly_blocked:
                # the escalation policy already recorded the block itself
                return decision
            await self.audit.record("Sign-in attempt from blocked device", LOG_TYPE_SIGN_IN, LEVEL_WARN,
                                    user_id=user_id, email=email, record_id=verdict.record.id)
        elif isinstance(verdict, SuspiciousRepeat):
            log.warning("Multiple sign-in attempts without verification for user %s (record %s)",
                        user_id, verdict.record.id)
        elif isinstance(verdict, MismatchDetected):
            log.info("Sign-in for user %s requires verification of record %s", user_id, verdict.observed.id)
        elif isinstance(verdict, (NoCanonicalContext, InternalError)):
            await self.audit.record("Error occurred while verifying context data", LOG_TYPE_SIGN_IN,
                                    LEVEL_ERROR, user_id=user_id, email=email)
        return decision

    # --- canonical context -------------------------------------------------------

    async def establish_canonical_context(self, user_id: str, email: Optional[str],
                                          fingerprint: Fingerprint) -> CanonicalContext:
        """Record the baseline right after email verification; an existing one is kept."""
        try:
            return await self.store.create_canonical_context(user_id, email, fingerprint)
        except DuplicateRecordError:
            log.info("Canonical context already exists for user %s; keeping it", user_id)
            return await self.store.get_canonical_context(user_id)

    async def adopt_as_canonical(self, record_id: int, user_id: str) -> Optional[CanonicalContext]:
        """Administrative replacement of the baseline with a trusted pending fingerprint."""
        record = await self.store.get_pending(record_id)
        if record is None or record.user_id != user_id:
            return None
        if not record.is_trusted:
            raise ValueError("only trusted login contexts can become the primary context")
        return await self.store.replace_canonical_context(user_id, record.fingerprint, record.email)

    # --- read-only projections -----------------------------------------------------

    async def primary_context(self, user_id: str) -> Optional[Dict[str, Any]]:
        canonical = await self.store.get_canonical_context(user_id)
        if canonical is None:
            return None
        return {"firstAdded": format_created_at(canonical.first_recorded_at),
                **canonical.fingerprint.to_public_dict()}

    async def trusted_contexts(self, user_id: str) -> List[Dict[str, Any]]:
        records = await self.store.list_pending(user_id, is_trusted=True, is_blocked=False)
        return [_context_item(r) for r in records]

    async def blocked_contexts(self, user_id: str) -> List[Dict[str, Any]]:
        records = await self.store.list_pending(user_id, is_trusted=False, is_blocked=True)
        return [_context_item(r) for r in records]

    async def security_logs(self, user_id: str) -> List[Dict[str, Any]]:
        entries = await self.store.list_security_logs(user_id)
        return [
            {"id": e.id, "time": format_created_at(e.created_at), "message": e.message,
             "type": e.type, "level": e.level, "context": e.context}
            for e in entries
        ]
