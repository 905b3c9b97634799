"""Oracle gateway protocol.

The oracle is the external decision-maker that reads diagnostics and asks
for capability invocations. Anything with ``send()`` and
``format_results()`` matching these signatures works; ``OpenAIOracle`` is
the built-in implementation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence

    from mender.capabilities.models import (
        CapabilityDescriptor,
        InvocationRequest,
        InvocationResult,
    )


@dataclass(frozen=True)
class OracleReply:
    """One oracle turn.

    Attributes:
        text: Free-text content of the reply (may be empty).
        invocations: Capability calls the oracle requested, in order.
        message: Provider-native assistant message, appended verbatim to the
            conversation so tool-call ids stay correlated.
        usage: Token usage reported by the provider, if any.
    """

    text: str = ""
    invocations: tuple[InvocationRequest, ...] = ()
    message: dict = field(default_factory=dict)
    usage: dict | None = None

    @property
    def wants_invocations(self) -> bool:
        return bool(self.invocations)


@runtime_checkable
class OracleGateway(Protocol):
    """Protocol for pluggable oracles."""

    def send(
        self,
        system_prompt: str,
        history: Sequence[dict],
        capabilities: Sequence[CapabilityDescriptor],
    ) -> OracleReply:
        """Send the conversation and return the oracle's next turn.

        Raises:
            OracleCommunicationError: On transport, auth or format failures.
        """
        ...

    def format_results(
        self,
        reply: OracleReply,
        results: Sequence[InvocationResult],
    ) -> list[dict]:
        """Messages to append after a turn: the assistant message, then one
        correlated result message per invocation."""
        ...
