"""OracleGateway over the OpenAI chat-completions tool-calling format."""

from __future__ import annotations

import copy
import json
import logging
from typing import TYPE_CHECKING

import httpx

from mender.capabilities.models import InvocationRequest, new_invocation_id
from mender.exceptions import OracleCommunicationError, OracleResponseError
from mender.oracle.client import OpenAIClient
from mender.oracle.protocols import OracleReply

if TYPE_CHECKING:
    from collections.abc import Sequence

    from mender.capabilities.models import CapabilityDescriptor, InvocationResult

logger = logging.getLogger(__name__)


def parse_tool_calls(message: dict) -> tuple[InvocationRequest, ...]:
    """Parse ``message["tool_calls"]`` into invocation requests.

    Malformed JSON arguments become an empty mapping (logged), so the
    dispatcher reports the missing parameters back to the oracle.

    Raises:
        OracleResponseError: If a tool call is not shaped like
            ``{"id": ..., "function": {"name": str, "arguments": ...}}``.
    """
    raw_calls = message.get("tool_calls") or []
    if not isinstance(raw_calls, list):
        raise OracleResponseError(f"tool_calls must be a list, got {type(raw_calls).__name__}")
    requests: list[InvocationRequest] = []
    for raw in raw_calls:
        if not isinstance(raw, dict):
            raise OracleResponseError(f"Malformed tool call: {raw!r}")
        call_id = raw.get("id") or new_invocation_id()
        func = raw.get("function") or {}
        if not isinstance(func, dict):
            raise OracleResponseError(f"Malformed function in tool call {call_id}: {func!r}")
        name = func.get("name")
        if not isinstance(name, str) or not name:
            raise OracleResponseError(f"Tool call {call_id} has no function name")
        raw_args = func.get("arguments", "{}")
        if isinstance(raw_args, dict):
            arguments = raw_args
        else:
            try:
                arguments = json.loads(raw_args or "{}")
            except (json.JSONDecodeError, TypeError):
                arguments = {}
                logger.warning("Malformed JSON in tool call arguments for %s", name)
        requests.append(
            InvocationRequest(capability_name=name, raw_arguments=arguments, invocation_id=call_id)
        )
    return tuple(requests)


class OpenAIOracle:
    """Drives an OpenAI-compatible model as the repair oracle.

    Args:
        client: Configured OpenAIClient. Built from the environment if omitted.
        model: Model override; defaults to the client's default model.
        temperature: Sampling temperature.
        max_tokens: Completion token cap.
    """

    def __init__(
        self,
        client: OpenAIClient | None = None,
        *,
        model: str | None = None,
        temperature: float | None = 0.0,
        max_tokens: int | None = 4096,
        timeout: float = 120.0,
    ) -> None:
        self._client = client or OpenAIClient(timeout=timeout)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def send(
        self,
        system_prompt: str,
        history: Sequence[dict],
        capabilities: Sequence[CapabilityDescriptor],
    ) -> OracleReply:
        messages = [{"role": "system", "content": system_prompt}, *history]
        tools = [descriptor.to_openai() for descriptor in capabilities]
        try:
            response = self._client.chat(
                messages,
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                tools=tools or None,
            )
        except OracleCommunicationError:
            raise
        except httpx.HTTPError as exc:
            raise OracleCommunicationError(f"{type(exc).__name__}: {exc}") from exc

        message = OpenAIClient.extract_message(response)
        if not isinstance(message, dict):
            raise OracleResponseError(f"Unexpected message in response: {message!r}")
        reply = OracleReply(
            text=message.get("content") or "",
            invocations=parse_tool_calls(message),
            message=copy.deepcopy(message),
            usage=OpenAIClient.extract_usage(response),
        )
        logger.debug(
            "Oracle replied: %d chars, %d invocation(s)",
            len(reply.text),
            len(reply.invocations),
        )
        return reply

    def format_results(
        self,
        reply: OracleReply,
        results: Sequence[InvocationResult],
    ) -> list[dict]:
        formatted: list[dict] = []
        if reply.message:
            formatted.append(copy.deepcopy(reply.message))
        else:
            formatted.append({"role": "assistant", "content": reply.text})
        for request, result in zip(reply.invocations, results):
            formatted.append({
                "role": "tool",
                "tool_call_id": request.invocation_id,
                "content": result.render(),
            })
        return formatted

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenAIOracle:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
