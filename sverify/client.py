"""
Client-side verification workflow.

Drives one verification attempt against an SVerify server:

    IDLE -> COLLECTING -> VERIFYING -> SUCCESS | FAILED
    FAILED (soft reason) -> CHALLENGE -> VERIFYING   (retry)
    CHALLENGE -> IDLE                                (cancel)

Critical and capacity failures never reach CHALLENGE. Everything runs
as asyncio tasks; the IP provider chain is strictly sequential.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

import httpx

from .util import is_ipv4

logger = logging.getLogger(__name__)

PROVIDER_TIMEOUT_SECONDS = 5.0

# Rejections a human challenge may clear
CHALLENGEABLE_REASONS = frozenset({"multiple_suspicious_indicators", "recent_verification"})


class WorkflowState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    VERIFYING = "verifying"
    SUCCESS = "success"
    FAILED = "failed"
    CHALLENGE = "challenge"


TRANSITIONS = {
    WorkflowState.IDLE: {WorkflowState.COLLECTING},
    WorkflowState.COLLECTING: {WorkflowState.VERIFYING, WorkflowState.FAILED},
    WorkflowState.VERIFYING: {WorkflowState.SUCCESS, WorkflowState.FAILED, WorkflowState.IDLE},
    WorkflowState.FAILED: {WorkflowState.CHALLENGE, WorkflowState.IDLE},
    WorkflowState.CHALLENGE: {WorkflowState.VERIFYING, WorkflowState.IDLE},
    WorkflowState.SUCCESS: {WorkflowState.IDLE},
}


class IllegalTransition(RuntimeError):
    """Raised on a state change the workflow does not allow."""


class IPResolutionError(RuntimeError):
    """Raised when no provider returned a valid IPv4 address."""


@dataclass(frozen=True)
class IPProvider:
    """An HTTP endpoint that reports the caller's public address."""
    name: str
    url: str
    field: str = "ip"


DEFAULT_PROVIDERS: Tuple[IPProvider, ...] = (
    IPProvider("ipify", "https://api.ipify.org?format=json"),
    IPProvider("ipapi", "https://ipapi.co/json/"),
    IPProvider("ipinfo", "https://ipinfo.io/json"),
)


class IPResolver:
    """
    Resolves the public IPv4 address through an ordered provider list.

    Provider i+1 is only queried after provider i failed or timed out.
    When ``server_url`` is set, the server's own ``/api/ip`` is the last
    provider tried.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        providers: Sequence[IPProvider] = DEFAULT_PROVIDERS,
        server_url: Optional[str] = None,
        timeout: float = PROVIDER_TIMEOUT_SECONDS
    ):
        self._client = client
        self._timeout = timeout
        self.providers = list(providers)
        if server_url:
            self.providers.append(IPProvider("server", server_url.rstrip("/") + "/api/ip"))

    async def _query(self, provider: IPProvider) -> Any:
        response = await self._client.get(provider.url)
        response.raise_for_status()
        return response.json().get(provider.field)

    async def resolve(self) -> Tuple[str, str]:
        """
        Returns:
            Tuple of (ip, provider name)

        Raises:
            IPResolutionError: If every provider failed
        """
        for provider in self.providers:
            try:
                ip = await asyncio.wait_for(self._query(provider), timeout=self._timeout)
            except asyncio.TimeoutError:
                logger.warning("IP provider %s timed out after %.1fs", provider.name, self._timeout)
                continue
            except (httpx.HTTPError, ValueError, AttributeError) as e:
                logger.warning("IP provider %s failed: %s", provider.name, e)
                continue
            if is_ipv4(ip):
                return ip, provider.name
            logger.warning("IP provider %s returned invalid address %r", provider.name, ip)
        raise IPResolutionError("Could not determine IP address")


@dataclass(frozen=True)
class VerificationOutcome:
    """Result of one verification attempt."""
    state: WorkflowState
    reason: Optional[str] = None
    message: Optional[str] = None
    trust_score: Optional[str] = None

    @property
    def challengeable(self) -> bool:
        return self.state is WorkflowState.FAILED and self.reason in CHALLENGEABLE_REASONS


class VerificationWorkflow:
    """
    One client's verification session.

    ``collect_signals`` is an async callable returning the environment
    report; ``settle_delay`` gives asynchronous probes time to finish.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        collect_signals: Callable[[], Awaitable[Dict[str, Any]]],
        resolver: Optional[IPResolver] = None,
        settle_delay: float = 0.2
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._collect_signals = collect_signals
        self._resolver = resolver or IPResolver(client, server_url=self._base_url)
        self._settle_delay = settle_delay
        self._inflight: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._ip: Optional[str] = None
        self._checks: Optional[Dict[str, Any]] = None
        self.state = WorkflowState.IDLE
        self.outcome: Optional[VerificationOutcome] = None

    def _transition(self, new_state: WorkflowState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug("Verification workflow %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def _finish(self, outcome: VerificationOutcome) -> VerificationOutcome:
        self._transition(outcome.state)
        self.outcome = outcome
        return outcome

    async def start(self) -> VerificationOutcome:
        """Collect signals, resolve the address and submit."""
        self._transition(WorkflowState.COLLECTING)
        self._cancel_requested = False
        self.outcome = None

        checks = await self._collect_signals()
        if self._settle_delay:
            await asyncio.sleep(self._settle_delay)

        try:
            ip, source = await self._resolver.resolve()
        except IPResolutionError as e:
            return self._finish(VerificationOutcome(WorkflowState.FAILED, "ip_unresolved", str(e)))

        logger.info("Resolved client address %s via %s", ip, source)
        self._ip, self._checks = ip, checks
        return await self._verify()

    def present_challenge(self) -> None:
        """Move a soft failure to the challenge state."""
        if self.outcome is None or not self.outcome.challengeable:
            raise IllegalTransition("only soft rejections may be challenged")
        self._transition(WorkflowState.CHALLENGE)

    async def retry(self) -> VerificationOutcome:
        """Resubmit after the user passed the challenge."""
        if self.state is not WorkflowState.CHALLENGE:
            raise IllegalTransition(f"cannot retry from {self.state.value}")
        self._cancel_requested = False
        return await self._verify()

    def cancel(self) -> None:
        """Abort at the challenge and return to IDLE, cancelling any in-flight request."""
        if self.state not in (WorkflowState.CHALLENGE, WorkflowState.VERIFYING):
            raise IllegalTransition(f"cannot cancel from {self.state.value}")
        self._cancel_requested = True
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._transition(WorkflowState.IDLE)
        self.outcome = VerificationOutcome(WorkflowState.IDLE, "cancelled")

    async def _verify(self) -> VerificationOutcome:
        self._transition(WorkflowState.VERIFYING)
        self._inflight = asyncio.ensure_future(self._submit())
        try:
            status_code, body = await self._inflight
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            return self.outcome
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Verification request failed: %s", e)
            return self._finish(VerificationOutcome(WorkflowState.FAILED, "network_error", str(e)))
        finally:
            self._inflight = None

        if status_code == 200 and body.get("success"):
            return self._finish(VerificationOutcome(
                WorkflowState.SUCCESS, trust_score=body.get("trustScore")
            ))
        return self._finish(VerificationOutcome(
            WorkflowState.FAILED,
            reason=body.get("reason") or "server_error",
            message=body.get("error") or "Verification failed",
        ))

    async def _submit(self) -> Tuple[int, Dict[str, Any]]:
        response = await self._client.post(
            self._base_url + "/addtemp",
            json={"ip": self._ip, "browserChecks": self._checks},
        )
        body = response.json()
        # a non-object body is treated as a server failure
        if not isinstance(body, dict):
            body = {}
        return response.status_code, body

    def reset(self) -> None:
        """Return a finished workflow to IDLE."""
        self._transition(WorkflowState.IDLE)
        self.outcome = None
