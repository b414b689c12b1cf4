"""
Trust Evaluator verdicts and the sign-in decision they map to
"""
from dataclasses import dataclass
from typing import Optional, Tuple, Union, assert_never

from context_auth.models.models import PendingLoginRecord


@dataclass(frozen=True)
class NoCanonicalContext:
    """The user has no known-good fingerprint to compare against yet"""


@dataclass(frozen=True)
class Trusted:
    # Set when trust came from a promoted pending record rather than the canonical context
    record: Optional[PendingLoginRecord] = None


@dataclass(frozen=True)
class Blocked:
    record: PendingLoginRecord
    newly_blocked: bool = False


@dataclass(frozen=True)
class SuspiciousRepeat:
    record: PendingLoginRecord


@dataclass(frozen=True)
class MismatchDetected:
    mismatched_fields: Tuple[str, ...]
    observed: PendingLoginRecord


@dataclass(frozen=True)
class InternalError:
    reason: str


Verdict = Union[NoCanonicalContext, Trusted, Blocked, SuspiciousRepeat, MismatchDetected, InternalError]


MESSAGE_VERIFIED = "Context verified"
MESSAGE_BLOCKED = ("You've been blocked due to suspicious login activity. "
                   "Please contact support for assistance.")
MESSAGE_SUSPICIOUS = (
    "You've temporarily been blocked due to suspicious login activity. We have already sent a "
    "verification email to your registered email address. Please follow the instructions in the "
    "email to verify your identity and gain access to your account. Please note that repeated "
    "attempts to log in without verifying your identity will result in this device being "
    "permanently blocked from accessing your account."
)
MESSAGE_VERIFY_EMAIL_SENT = (
    "We noticed a sign-in from a new device or location. A verification email has been sent "
    "to your registered email address."
)
MESSAGE_VERIFY_ERROR = "Error occurred while verifying context data"


@dataclass(frozen=True)
class SignInDecision:
    """What the sign-in flow should do with a verdict"""
    allowed: bool
    status_code: int
    message: str
    verdict: Verdict
    requires_verification: bool = False
    pending_record_id: Optional[int] = None


def decision_for(verdict: Verdict) -> SignInDecision:
    match verdict:
        case Trusted():
            return SignInDecision(True, 200, MESSAGE_VERIFIED, verdict)
        case Blocked():
            return SignInDecision(False, 401, MESSAGE_BLOCKED, verdict)
        case SuspiciousRepeat(record=record):
            return SignInDecision(False, 401, MESSAGE_SUSPICIOUS, verdict,
                                  pending_record_id=record.id)
        case MismatchDetected(observed=observed):
            return SignInDecision(False, 401, MESSAGE_VERIFY_EMAIL_SENT, verdict,
                                  requires_verification=True, pending_record_id=observed.id)
        case NoCanonicalContext() | InternalError():
            return SignInDecision(False, 500, MESSAGE_VERIFY_ERROR, verdict)
        case _:
            assert_never(verdict)
