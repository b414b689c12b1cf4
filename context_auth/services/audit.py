"""
Security audit trail: blocking events and administrative actions on login contexts
"""
import logging
from typing import Optional

from context_auth.db.fingerprints import FingerprintStore, FingerprintStoreError
from context_auth.models.models import Fingerprint

log = logging.getLogger(__name__)
# Separate logger so audit events can be routed away from ordinary traffic
security_log = logging.getLogger("context_auth.security")

LOG_TYPE_SIGN_IN = "sign in"
LOG_TYPE_CONTEXT_ADMIN = "context admin"

LEVEL_INFO = "info"
LEVEL_WARN = "warn"
LEVEL_ERROR = "error"

_PY_LEVELS = {LEVEL_INFO: logging.INFO, LEVEL_WARN: logging.WARNING, LEVEL_ERROR: logging.ERROR}

MESSAGE_DEVICE_BLOCKED = "Device blocked due to too many unverified login attempts"


class SecurityAudit:
    def __init__(self, store: FingerprintStore):
        self.store = store

    async def record(self, message: str, type: str, level: str, user_id: Optional[str] = None,
                     email: Optional[str] = None, fingerprint: Optional[Fingerprint] = None,
                     record_id: Optional[int] = None) -> Optional[int]:
        """Emit on the security logger and persist; returns the entry id, None if persisting failed."""
        security_log.log(_PY_LEVELS.get(level, logging.INFO), "%s user=%s record=%s type=%s",
                         message, user_id, record_id, type)
        context = fingerprint.to_public_dict() if fingerprint else None
        if context is not None and record_id is not None:
            context["recordId"] = record_id
        try:
            return await self.store.append_security_log(message, type, level, user_id=user_id,
                                                        email=email, context=context)
        except FingerprintStoreError as e:
            log.error("Failed to persist security log entry for user %s: %s", user_id, e, exc_info=True)
            return None
