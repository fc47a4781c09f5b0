"""
Trust classification for SVerify.

Maps a validated signal report to a verdict:

1. any critical signal true -> CRITICAL_VIOLATION (no retry path)
2. more than ``suspicious_threshold`` suspicious secondary signals -> SUSPICIOUS
3. otherwise -> CLEAN

Classification is pure and deterministic. The threshold and the
critical/secondary partition come from ``ClassifierPolicy``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .config import SUSPICIOUS_THRESHOLD, load_policy_overrides
from .signals import DEFAULT_SCHEMA, SignalCategory, SignalReport, SignalSchema, SignalSpec


class Verdict(str, Enum):
    CLEAN = "clean"
    SUSPICIOUS = "suspicious"
    CRITICAL_VIOLATION = "critical_violation"


@dataclass(frozen=True)
class TrustClassification:
    """Result of classifying one report."""
    verdict: Verdict
    suspicious_count: int = 0
    critical_signals: Tuple[str, ...] = ()
    suspicious_signals: Tuple[str, ...] = ()

    @property
    def is_clean(self) -> bool:
        return self.verdict is Verdict.CLEAN

    @property
    def is_critical(self) -> bool:
        return self.verdict is Verdict.CRITICAL_VIOLATION

    @property
    def is_suspicious(self) -> bool:
        return self.verdict is Verdict.SUSPICIOUS


@dataclass(frozen=True)
class ClassifierPolicy:
    """Tunable classification parameters."""
    suspicious_threshold: int = 2
    schema: SignalSchema = field(default=DEFAULT_SCHEMA, compare=False)

    @classmethod
    def from_config(cls, overrides: Optional[Dict[str, Any]] = None) -> "ClassifierPolicy":
        """
        Build a policy from environment defaults and the optional policy file.

        Args:
            overrides: Policy mapping; loaded from POLICY_PATH when None
        """
        if overrides is None:
            overrides = load_policy_overrides()

        threshold = int(overrides.get("suspicious_threshold", SUSPICIOUS_THRESHOLD))
        if threshold < 0:
            raise ValueError("suspicious_threshold must not be negative")

        schema = DEFAULT_SCHEMA
        critical = overrides.get("critical")
        secondary = overrides.get("secondary")
        extra = [SignalSpec.from_dict(d) for d in overrides.get("extra_secondary", [])]
        if critical is not None or secondary is not None or extra:
            schema = schema.recategorize(critical=critical, secondary=secondary, extra_secondary=extra)

        return cls(suspicious_threshold=threshold, schema=schema)


DEFAULT_POLICY = ClassifierPolicy()


def classify(report: SignalReport, policy: ClassifierPolicy = DEFAULT_POLICY) -> TrustClassification:
    """
    Classify a validated signal report.

    Args:
        report: Report parsed with ``policy.schema``
        policy: Threshold and signal partition to apply

    Returns:
        TrustClassification carrying the verdict, the suspicion count and
        the names of the signals that fired
    """
    critical = tuple(
        s.name for s in report.by_category(SignalCategory.CRITICAL) if s.value is True
    )
    suspicious = tuple(
        s.name for s in report.by_category(SignalCategory.SECONDARY)
        if policy.schema.spec(s.name).is_suspicious(s.value)
    )

    if critical:
        return TrustClassification(Verdict.CRITICAL_VIOLATION, len(suspicious), critical, suspicious)
    if len(suspicious) > policy.suspicious_threshold:
        return TrustClassification(Verdict.SUSPICIOUS, len(suspicious), (), suspicious)
    return TrustClassification(Verdict.CLEAN, len(suspicious), (), suspicious)
