"""Human-in-the-loop approval for sensitive tool calls."""

import asyncio
import copy
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from cuid2 import cuid_wrapper

from app.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()

DEFAULT_APPROVAL_TIMEOUT_SECONDS = 30.0


class ApprovalOutcome(StrEnum):
    """How an approval request was resolved."""

    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ApprovalDecision:
    """The single outcome applied to an approval request."""

    outcome: ApprovalOutcome
    reason: str

    @property
    def approved(self) -> bool:
        return self.outcome is ApprovalOutcome.APPROVED


@dataclass(frozen=True)
class ApprovalRequest:
    """A pending request for a human decision on a tool call."""

    approval_id: str
    tool_name: str
    tool_input: dict[str, Any]
    timeout_seconds: float
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls, tool_name: str, tool_input: dict[str, Any], timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    ) -> "ApprovalRequest":
        """Create a request with a fresh id and a snapshot of the tool input."""
        return cls(
            approval_id=f"approval_{cuid()}",
            tool_name=tool_name,
            tool_input=copy.deepcopy(tool_input),
            timeout_seconds=timeout_seconds,
        )

    @property
    def timeout_ms(self) -> int:
        return int(self.timeout_seconds * 1000)


class ApprovalGate:
    """Single-resolution future for one approval request.

    Explicit approval, explicit rejection and the timeout all go through one
    settle step. The first one wins; anything after it is ignored.
    Must be created inside a running event loop.
    """

    def __init__(
        self,
        request: ApprovalRequest,
        on_settled: Callable[["ApprovalGate"], None] | None = None,
    ):
        loop = asyncio.get_running_loop()
        self.request = request
        self._future: asyncio.Future[ApprovalDecision] = loop.create_future()
        self._timer = loop.call_later(request.timeout_seconds, self._expire)
        self._on_settled = on_settled

    @property
    def approval_id(self) -> str:
        return self.request.approval_id

    @property
    def settled(self) -> bool:
        return self._future.done()

    @property
    def decision(self) -> ApprovalDecision | None:
        return self.result() if self._future.done() else None

    def result(self) -> ApprovalDecision:
        """Return the decision of a settled gate.

        Raises:
            asyncio.InvalidStateError: If the gate is still open
        """
        return self._future.result()

    def approve(self) -> bool:
        """Approve the request. Returns False if it was already resolved."""
        return self._settle(ApprovalDecision(ApprovalOutcome.APPROVED, "Approved by user"))

    def reject(self, reason: str | None = None) -> bool:
        """Reject the request. Returns False if it was already resolved."""
        reason = reason or f"User rejected the {self.request.tool_name} operation"
        return self._settle(ApprovalDecision(ApprovalOutcome.REJECTED, reason))

    def decide(self, approved: bool) -> bool:
        """Apply an explicit yes/no decision."""
        return self.approve() if approved else self.reject()

    def follow(self, decision: Awaitable[bool]) -> asyncio.Task[None]:
        """Resolve this gate from an awaitable decision, racing the timeout.

        The returned task can be cancelled once the gate has settled.
        """

        async def _await_decision() -> None:
            try:
                approved = await decision
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Approval handler for {self.approval_id} failed: {e}", exc_info=True)
                self.reject(f"Approval handler failed: {e}")
                return
            self.decide(bool(approved))

        return asyncio.ensure_future(_await_decision())

    async def wait(self) -> ApprovalDecision:
        """Wait for the decision (at most the request's timeout)."""
        return await asyncio.shield(self._future)

    def close(self) -> None:
        """Stop the timer, rejecting the request if it is still open."""
        self.reject(f"Approval request for {self.request.tool_name} was withdrawn")
        self._timer.cancel()

    def _expire(self) -> None:
        self._settle(
            ApprovalDecision(
                ApprovalOutcome.TIMED_OUT,
                f"No approval received within {self.request.timeout_seconds:g}s; "
                f"{self.request.tool_name} was not executed",
            )
        )

    def _settle(self, decision: ApprovalDecision) -> bool:
        if self._future.done():
            logger.debug(f"Ignoring {decision.outcome} for already resolved approval {self.approval_id}")
            return False

        self._timer.cancel()
        self._future.set_result(decision)
        logger.info(f"Approval {self.approval_id} for {self.request.tool_name}: {decision.outcome}")
        if self._on_settled:
            self._on_settled(self)
        return True


class ApprovalRegistry:
    """Open approval gates, keyed by approval id.

    Gates are discarded as soon as they settle, so a decision that arrives
    after the timeout finds nothing to resolve.
    """

    def __init__(self):
        self._gates: dict[str, ApprovalGate] = {}

    def open(
        self, tool_name: str, tool_input: dict[str, Any], timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    ) -> ApprovalGate:
        """Create and register a gate for a tool call."""
        request = ApprovalRequest.create(tool_name, tool_input, timeout_seconds)
        gate = ApprovalGate(request, on_settled=self._discard)
        self._gates[request.approval_id] = gate
        logger.info(f"Opened approval {request.approval_id} for {tool_name} ({timeout_seconds:g}s)")
        return gate

    def get(self, approval_id: str) -> ApprovalGate | None:
        return self._gates.get(approval_id)

    def decide(self, approval_id: str, approved: bool) -> ApprovalDecision:
        """Apply a decision from the UI.

        Raises:
            KeyError: If the approval id is unknown or already resolved
        """
        gate = self._gates.get(approval_id)
        if gate is None:
            raise KeyError(approval_id)
        gate.decide(approved)
        return gate.result()

    def close(self, approval_id: str) -> None:
        """Withdraw a gate that is no longer awaited."""
        gate = self._gates.pop(approval_id, None)
        if gate is not None:
            gate.close()

    def __len__(self) -> int:
        return len(self._gates)

    def _discard(self, gate: ApprovalGate) -> None:
        self._gates.pop(gate.approval_id, None)
