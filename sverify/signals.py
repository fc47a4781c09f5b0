"""
Signal schema for SVerify.

An environment report arrives as a JSON object of named signals. The
schema decides which names are recognized, whether each one is
``critical`` or ``secondary``, what value type it must carry and which
value counts as suspicious. Unknown names are ignored; missing or null
signals are neutral.
"""

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

SignalValue = Union[bool, float]


class SignalCategory(str, Enum):
    """Severity class of a signal."""
    CRITICAL = "critical"
    SECONDARY = "secondary"


class SignalKind(str, Enum):
    """Value type carried by a signal."""
    BOOLEAN = "boolean"
    NUMBER = "number"


class SignalValidationError(Exception):
    """Raised when an environment report is malformed."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


@dataclass(frozen=True)
class SignalSpec:
    """
    Definition of one recognized signal.

    Boolean signals are suspicious when their value equals
    ``suspicious_when``. Numeric signals must lie in
    ``[minimum, maximum]`` to be well-formed and are suspicious
    below ``plausible_min``.
    """
    name: str
    category: SignalCategory
    kind: SignalKind = SignalKind.BOOLEAN
    suspicious_when: bool = True
    minimum: float = 0.0
    maximum: float = 1_000_000.0
    plausible_min: Optional[float] = None

    def coerce(self, value: Any) -> SignalValue:
        """Validate a raw JSON value against this spec."""
        if self.kind is SignalKind.BOOLEAN:
            if not isinstance(value, bool):
                raise SignalValidationError(self.name, "must be a boolean")
            return value

        # bool is an int subclass; reject it for numeric signals
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise SignalValidationError(self.name, "must be a number")
        try:
            number = float(value)
        except OverflowError:
            raise SignalValidationError(self.name, "must be finite")
        if not math.isfinite(number):
            raise SignalValidationError(self.name, "must be finite")
        if number < self.minimum or number > self.maximum:
            raise SignalValidationError(
                self.name, f"must be between {self.minimum:g} and {self.maximum:g}"
            )
        return number

    def is_suspicious(self, value: SignalValue) -> bool:
        if self.kind is SignalKind.NUMBER:
            return self.plausible_min is not None and value < self.plausible_min
        return value is self.suspicious_when

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignalSpec":
        """Build a secondary signal definition from policy configuration."""
        try:
            name = data["name"]
        except (KeyError, TypeError):
            raise ValueError("signal definition requires a name")
        kind = SignalKind(data.get("kind", SignalKind.BOOLEAN.value))
        spec = cls(
            name=name,
            category=SignalCategory.SECONDARY,
            kind=kind,
            suspicious_when=bool(data.get("suspicious_when", True)),
        )
        if kind is SignalKind.NUMBER:
            spec = replace(
                spec,
                minimum=float(data.get("minimum", spec.minimum)),
                maximum=float(data.get("maximum", spec.maximum)),
                plausible_min=data.get("plausible_min"),
            )
        return spec


@dataclass(frozen=True)
class Signal:
    """One validated signal from a report."""
    name: str
    category: SignalCategory
    value: SignalValue


@dataclass(frozen=True)
class SignalReport:
    """Ordered, validated set of signals, in schema order."""
    signals: Tuple[Signal, ...] = ()

    def __iter__(self) -> Iterator[Signal]:
        return iter(self.signals)

    def __len__(self) -> int:
        return len(self.signals)

    def get(self, name: str) -> Optional[Signal]:
        for signal in self.signals:
            if signal.name == name:
                return signal
        return None

    def by_category(self, category: SignalCategory) -> List[Signal]:
        return [s for s in self.signals if s.category is category]

    def to_dict(self) -> Dict[str, SignalValue]:
        return {s.name: s.value for s in self.signals}


class SignalSchema:
    """
    Ordered collection of signal definitions.

    The critical set is restricted to boolean signals; a critical
    signal fires when its value is ``True``.
    """

    def __init__(self, specs: Iterable[SignalSpec]):
        self._specs: Dict[str, SignalSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ValueError(f"duplicate signal definition: {spec.name}")
            if spec.category is SignalCategory.CRITICAL and spec.kind is not SignalKind.BOOLEAN:
                raise ValueError(f"critical signal {spec.name} must be boolean")
            self._specs[spec.name] = spec

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[SignalSpec]:
        return iter(self._specs.values())

    def spec(self, name: str) -> SignalSpec:
        return self._specs[name]

    @property
    def critical_names(self) -> List[str]:
        return [s.name for s in self if s.category is SignalCategory.CRITICAL]

    @property
    def secondary_names(self) -> List[str]:
        return [s.name for s in self if s.category is SignalCategory.SECONDARY]

    def recategorize(
        self,
        critical: Optional[Iterable[str]] = None,
        secondary: Optional[Iterable[str]] = None,
        extra_secondary: Optional[Iterable[SignalSpec]] = None
    ) -> "SignalSchema":
        """
        Return a new schema with a different critical/secondary partition.

        Args:
            critical: If given, exactly these names are critical
            secondary: Names to force into the secondary set
            extra_secondary: Additional secondary signal definitions

        Raises:
            ValueError: If a name is not defined in the schema
        """
        specs = dict(self._specs)
        for extra in extra_secondary or ():
            if extra.name in specs:
                raise ValueError(f"duplicate signal definition: {extra.name}")
            specs[extra.name] = replace(extra, category=SignalCategory.SECONDARY)

        if critical is not None:
            critical = set(critical)
            unknown = critical - specs.keys()
            if unknown:
                raise ValueError(f"unknown critical signals: {sorted(unknown)}")
            specs = {
                name: replace(
                    spec,
                    category=SignalCategory.CRITICAL if name in critical else SignalCategory.SECONDARY
                )
                for name, spec in specs.items()
            }

        for name in secondary or ():
            if name not in specs:
                raise ValueError(f"unknown secondary signal: {name}")
            specs[name] = replace(specs[name], category=SignalCategory.SECONDARY)

        return SignalSchema(specs.values())

    def parse(self, raw: Any) -> SignalReport:
        """
        Validate a raw environment report.

        Raises:
            SignalValidationError: If the report is missing or a
                recognized signal carries a value of the wrong shape
        """
        if raw is None:
            raise SignalValidationError("browserChecks", "is required")
        if not isinstance(raw, dict):
            raise SignalValidationError("browserChecks", "must be an object")

        signals = []
        for name, spec in self._specs.items():
            value = raw.get(name)
            if value is None:
                continue
            signals.append(Signal(name, spec.category, spec.coerce(value)))
        return SignalReport(tuple(signals))


def _flag(name: str, category: SignalCategory = SignalCategory.SECONDARY,
          suspicious_when: bool = True) -> SignalSpec:
    return SignalSpec(name, category, SignalKind.BOOLEAN, suspicious_when)


def _capability(name: str, maximum: float, plausible_min: float) -> SignalSpec:
    return SignalSpec(
        name, SignalCategory.SECONDARY, SignalKind.NUMBER,
        maximum=maximum, plausible_min=plausible_min
    )


DEFAULT_SIGNAL_SPECS: Tuple[SignalSpec, ...] = (
    # Automation markers
    _flag("isBot", SignalCategory.CRITICAL),
    _flag("hasWebdriver", SignalCategory.CRITICAL),
    _flag("hasSelenium", SignalCategory.CRITICAL),
    _flag("hasHeadless", SignalCategory.CRITICAL),
    _flag("hasAutomation", SignalCategory.CRITICAL),
    # Browsing context
    _flag("isEmbedded"),
    _flag("hasAdBlock"),
    _flag("isIncognito"),
    _flag("isCleanLoad", suspicious_when=False),
    # Environment consistency
    _flag("hasValidViewport", suspicious_when=False),
    _flag("hasValidTimezone", suspicious_when=False),
    _flag("hasValidLanguage", suspicious_when=False),
    _flag("hasValidCanvas", suspicious_when=False),
    _flag("hasValidWebGL", suspicious_when=False),
    _flag("isTrustedDevice", suspicious_when=False),
    # Hardware capabilities
    _capability("screenWidth", maximum=100_000, plausible_min=200),
    _capability("screenHeight", maximum=100_000, plausible_min=200),
    _capability("hardwareConcurrency", maximum=1024, plausible_min=1),
    _capability("deviceMemory", maximum=4096, plausible_min=0.25),
)

DEFAULT_SCHEMA = SignalSchema(DEFAULT_SIGNAL_SPECS)
