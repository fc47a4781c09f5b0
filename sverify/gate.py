"""
Admission orchestration for SVerify.

Sequences one admission request:

    validate -> classify -> reject critical -> reject suspicious
             -> global rate check -> per-identifier debounce -> upsert

Every rejection is an ``AdmissionRejected`` carrying a ``Reason``; the
reason fixes the HTTP status and whether the client may retry.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .classifier import ClassifierPolicy, TrustClassification, classify
from .config import REJECT_THRESHOLD, load_policy_overrides
from .logging_config import audit_log
from .rate_limit import InsertionRateLimiter
from .signals import SignalValidationError
from .store import StoreWriteError, TicketStore, TrustScore, VerificationTicket, get_ticket_store
from .util import Clock, is_ipv4, now_epoch

logger = logging.getLogger(__name__)


class Reason(str, Enum):
    INVALID_INPUT = "invalid_input"
    INVALID_IP_FORMAT = "invalid_ip_format"
    BOT_DETECTION = "bot_detection"
    MULTIPLE_SUSPICIOUS_INDICATORS = "multiple_suspicious_indicators"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RECENT_VERIFICATION = "recent_verification"
    SERVER_ERROR = "server_error"


@dataclass(frozen=True)
class ReasonInfo:
    status_code: int
    retryable: bool
    message: str


REASONS: Dict[Reason, ReasonInfo] = {
    Reason.INVALID_INPUT: ReasonInfo(
        400, False, "IP address and browser checks are required"),
    Reason.INVALID_IP_FORMAT: ReasonInfo(
        400, False, "Invalid IP address format"),
    Reason.BOT_DETECTION: ReasonInfo(
        403, False, "Automated access detected. Please access this site manually."),
    Reason.MULTIPLE_SUSPICIOUS_INDICATORS: ReasonInfo(
        400, True, "Multiple suspicious indicators detected. Please try again."),
    Reason.RATE_LIMIT_EXCEEDED: ReasonInfo(
        429, True, "Too many verification attempts. Please wait before trying again."),
    Reason.RECENT_VERIFICATION: ReasonInfo(
        400, True, "IP was recently verified. Please wait before trying again."),
    Reason.SERVER_ERROR: ReasonInfo(
        500, False, "Internal server error"),
}


class AdmissionRejected(Exception):
    """Raised when an admission request is refused."""

    def __init__(self, reason: Reason, message: Optional[str] = None, **details: Any):
        info = REASONS[reason]
        self.reason = reason
        self.status_code = info.status_code
        self.retryable = info.retryable
        self.message = message or info.message
        self.details = details
        super().__init__(f"{reason.value}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "reason": self.reason.value,
            "retryable": self.retryable,
            **self.details,
        }


@dataclass(frozen=True)
class AdmissionResult:
    """Successful admission."""
    ticket: VerificationTicket
    classification: TrustClassification

    @property
    def trust_score(self) -> TrustScore:
        return self.ticket.trust_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": "IP verification successful",
            "trustScore": self.ticket.trust_score.value,
        }


class AdmissionGate:
    """
    Admission orchestrator.

    Rate checks and the store mutation run under one lock, so two
    concurrent admissions cannot both pass a check the first one's
    insert would have failed.
    """

    def __init__(
        self,
        store: TicketStore,
        limiter: Optional[InsertionRateLimiter] = None,
        policy: Optional[ClassifierPolicy] = None,
        reject_threshold: int = REJECT_THRESHOLD,
        clock: Optional[Clock] = None
    ):
        self._clock = clock or now_epoch
        self.store = store
        self.limiter = limiter or InsertionRateLimiter(store, clock=self._clock)
        self.policy = policy or ClassifierPolicy.from_config()
        self.reject_threshold = reject_threshold
        self._lock = threading.RLock()

    def admit(self, identifier: Any, raw_checks: Any, user_agent: Optional[str] = None) -> AdmissionResult:
        """
        Run one admission request.

        Args:
            identifier: Claimed client IPv4 address
            raw_checks: Environment report as decoded JSON
            user_agent: Client User-Agent header

        Returns:
            AdmissionResult for the stored ticket

        Raises:
            AdmissionRejected: On any rejection
        """
        audit_log.admission_request(identifier if isinstance(identifier, str) else None, user_agent)
        try:
            result = self._admit(identifier, raw_checks, user_agent or "Unknown")
        except AdmissionRejected as e:
            audit_log.admission_decision(
                identifier if isinstance(identifier, str) else None,
                admitted=False,
                reason=e.reason.value,
                suspicious_count=e.details.get("indicators")
            )
            raise
        audit_log.admission_decision(
            result.ticket.identifier,
            admitted=True,
            trust_score=result.trust_score.value,
            suspicious_count=result.ticket.suspicious_count
        )
        return result

    def _admit(self, identifier: Any, raw_checks: Any, user_agent: str) -> AdmissionResult:
        if not identifier or raw_checks is None:
            raise AdmissionRejected(Reason.INVALID_INPUT)
        if not is_ipv4(identifier):
            raise AdmissionRejected(Reason.INVALID_IP_FORMAT)

        try:
            report = self.policy.schema.parse(raw_checks)
        except SignalValidationError as e:
            raise AdmissionRejected(
                Reason.INVALID_INPUT, f"Invalid browser checks: {e}", field=e.field
            ) from e

        classification = classify(report, self.policy)
        return self.decide(identifier, classification, user_agent)

    def decide(self, identifier: str, classification: TrustClassification,
               user_agent: str = "Unknown") -> AdmissionResult:
        """Apply rejection policy to a classification and store the ticket."""
        if classification.is_critical:
            audit_log.bot_detected(identifier, classification.critical_signals)
            raise AdmissionRejected(Reason.BOT_DETECTION)

        if classification.is_suspicious and classification.suspicious_count > self.reject_threshold:
            raise AdmissionRejected(
                Reason.MULTIPLE_SUSPICIOUS_INDICATORS,
                indicators=classification.suspicious_count
            )

        with self._lock:
            if not self.limiter.admit_insert():
                audit_log.rate_limit_exceeded(identifier, "global")
                raise AdmissionRejected(Reason.RATE_LIMIT_EXCEEDED)

            if not self.limiter.admit_for_identifier(identifier):
                audit_log.rate_limit_exceeded(identifier, "identifier")
                raise AdmissionRejected(Reason.RECENT_VERIFICATION)

            ticket = VerificationTicket(
                identifier=identifier,
                issued_at=self._clock(),
                trust_score=TrustScore.HIGH if classification.is_clean else TrustScore.LOW,
                suspicious_count=classification.suspicious_count,
                user_agent=user_agent,
            )
            try:
                self.store.upsert(ticket)
            except StoreWriteError as e:
                logger.exception("Failed to store ticket for %s", identifier)
                raise AdmissionRejected(Reason.SERVER_ERROR) from e
            self.limiter.record_insert(identifier)

        logger.info("IP %s verified, trust score %s", identifier, ticket.trust_score.value)
        return AdmissionResult(ticket, classification)

    def verify(self, identifier: str) -> bool:
        """True iff the identifier holds an unexpired ticket."""
        return self.store.lookup(identifier)


def build_gate(clock: Optional[Clock] = None, store: Optional[TicketStore] = None) -> AdmissionGate:
    """Assemble a gate from configuration."""
    overrides = load_policy_overrides()
    store = store or get_ticket_store(clock=clock)
    return AdmissionGate(
        store=store,
        policy=ClassifierPolicy.from_config(overrides),
        reject_threshold=int(overrides.get("reject_threshold", REJECT_THRESHOLD)),
        clock=clock,
    )
