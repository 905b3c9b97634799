"""Tests for the oracle package.

Tests cover:
- OpenAIClient: request formatting, retry behavior, auth errors, env config
- parse_tool_calls: well-formed and malformed tool calls
- OpenAIOracle: send() / format_results() over a mocked transport
- Error hierarchy
"""

from __future__ import annotations

import json

import httpx
import pytest
import tenacity

from mender.capabilities.models import CapabilityDescriptor, Err, ErrorKind, Ok, param
from mender.exceptions import (
    MenderError,
    OracleAuthError,
    OracleCommunicationError,
    OracleConfigError,
    OracleRateLimitError,
    OracleResponseError,
)
from mender.oracle import OpenAIClient, OpenAIOracle, OracleGateway, OracleReply, parse_tool_calls
from mender.oracle.client import wait_retry_after


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

def _response(content: str | None = "Done.", tool_calls: list[dict] | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def _tool_call(call_id: str, name: str, arguments) -> dict:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


def _make_client(handler, api_key: str = "test-key", max_retries: int = 1, **kwargs):
    client = OpenAIClient(
        api_key=api_key, base_url="http://test-api", max_retries=max_retries, **kwargs
    )
    # Replace with mock transport but preserve original headers
    client._client = httpx.Client(
        transport=httpx.MockTransport(handler),
        headers={"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"},
    )
    return client


# ===========================================================================
# Error hierarchy
# ===========================================================================

class TestErrorHierarchy:
    @pytest.mark.parametrize(
        "error_class",
        [OracleConfigError, OracleAuthError, OracleRateLimitError, OracleResponseError],
    )
    def test_subclasses(self, error_class):
        assert issubclass(error_class, OracleCommunicationError)
        assert issubclass(error_class, MenderError)

    def test_rate_limit_retry_after(self):
        err = OracleRateLimitError("slow down", retry_after=30.0)
        assert err.retry_after == 30.0
        assert "30.0s" in str(err)


# ===========================================================================
# OpenAIClient
# ===========================================================================

class TestOpenAIClient:
    def test_request_format(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["payload"] = json.loads(request.content)
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["authorization"]
            return httpx.Response(200, json=_response())

        client = _make_client(handler)
        client.chat(
            [{"role": "user", "content": "fix it"}],
            model="gpt-4o",
            temperature=0.0,
            max_tokens=100,
            tools=[{"type": "function", "function": {"name": "x"}}],
        )
        payload = captured["payload"]
        assert payload["model"] == "gpt-4o"
        assert payload["temperature"] == 0.0
        assert payload["max_tokens"] == 100
        assert payload["tools"][0]["function"]["name"] == "x"
        assert captured["url"] == "http://test-api/chat/completions"
        assert captured["auth"] == "Bearer test-key"
        client.close()

    def test_optional_params_omitted(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["payload"] = json.loads(request.content)
            return httpx.Response(200, json=_response())

        with _make_client(handler, default_model="small-model") as client:
            client.chat([{"role": "user", "content": "hi"}])
        assert captured["payload"] == {
            "model": "small-model",
            "messages": [{"role": "user", "content": "hi"}],
        }

    def test_retry_on_500_then_success(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(500, json={"error": "boom"})
            return httpx.Response(200, json=_response())

        with _make_client(handler, max_retries=2) as client:
            assert "choices" in client.chat([{"role": "user", "content": "x"}])
        assert calls == 2

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_error_not_retried(self, status):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(status, json={"error": "denied"})

        with _make_client(handler, max_retries=3) as client:
            with pytest.raises(OracleAuthError):
                client.chat([{"role": "user", "content": "x"}])
        assert calls == 1

    def test_rate_limit_with_retry_after(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": "slow"}, headers={"Retry-After": "42"})

        with _make_client(handler) as client:
            with pytest.raises(OracleRateLimitError) as exc_info:
                client.chat([{"role": "user", "content": "x"}])
        assert exc_info.value.retry_after == 42.0

    def test_retry_after_honoured_then_succeeds(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429, json={"error": "slow"}, headers={"Retry-After": "0"})
            return httpx.Response(200, json=_response("ok"))

        with _make_client(handler, max_retries=2) as client:
            response = client.chat([{"role": "user", "content": "x"}])
        assert OpenAIClient.extract_content(response) == "ok"
        assert len(calls) == 2

    def test_non_json_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>gateway</html>")

        with _make_client(handler) as client:
            with pytest.raises(OracleResponseError, match="not JSON"):
                client.chat([{"role": "user", "content": "x"}])

    def test_missing_choices(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "x"})

        with _make_client(handler) as client:
            with pytest.raises(OracleResponseError, match="choices"):
                client.chat([{"role": "user", "content": "x"}])

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("MENDER_OPENAI_API_KEY", raising=False)
        with pytest.raises(OracleConfigError):
            OpenAIClient()

    def test_env_configuration(self, monkeypatch):
        monkeypatch.setenv("MENDER_OPENAI_API_KEY", "env-key")
        monkeypatch.setenv("MENDER_OPENAI_BASE_URL", "http://env-api/v1/")
        client = OpenAIClient()
        assert client._api_key == "env-key"
        assert client._base_url == "http://env-api/v1"
        client.close()

    def test_extractors(self):
        response = _response("hello")
        assert OpenAIClient.extract_content(response) == "hello"
        assert OpenAIClient.extract_usage(response)["total_tokens"] == 15
        assert OpenAIClient.extract_content(_response(None)) == ""
        with pytest.raises(OracleResponseError):
            OpenAIClient.extract_message({"choices": []})


# ===========================================================================
# Retry-After wait
# ===========================================================================

class TestRetryAfterWait:
    @staticmethod
    def _state_after(exc: BaseException) -> tenacity.RetryCallState:
        state = tenacity.RetryCallState(tenacity.Retrying(), None, (), {})
        state.set_exception((type(exc), exc, None))
        return state

    def test_uses_server_delay(self):
        wait = wait_retry_after(tenacity.wait_fixed(5))
        assert wait(self._state_after(OracleRateLimitError(retry_after=2.0))) == 2.0

    def test_server_delay_capped(self):
        wait = wait_retry_after(tenacity.wait_fixed(5), max_wait=10.0)
        assert wait(self._state_after(OracleRateLimitError(retry_after=3600.0))) == 10.0

    @pytest.mark.parametrize(
        "exc",
        [OracleRateLimitError(), httpx.ConnectError("refused")],
        ids=["no-retry-after", "connect-error"],
    )
    def test_falls_back_to_backoff(self, exc):
        wait = wait_retry_after(tenacity.wait_fixed(5))
        assert wait(self._state_after(exc)) == 5


# ===========================================================================
# parse_tool_calls
# ===========================================================================

class TestParseToolCalls:
    def test_parses_calls_in_order(self):
        message = {
            "tool_calls": [
                _tool_call("call_a", "read_file_lines", {"file_path": "a", "start_line": 1}),
                _tool_call("call_b", "run_build", {}),
            ]
        }
        first, second = parse_tool_calls(message)
        assert first.capability_name == "read_file_lines"
        assert first.raw_arguments == {"file_path": "a", "start_line": 1}
        assert first.invocation_id == "call_a"
        assert second.capability_name == "run_build"

    def test_malformed_arguments_become_empty(self):
        (request,) = parse_tool_calls({"tool_calls": [_tool_call("c1", "edit_file", "{oops")]})
        assert request.raw_arguments == {}

    def test_missing_id_generated(self):
        call = {"function": {"name": "run_build", "arguments": ""}}
        (request,) = parse_tool_calls({"tool_calls": [call]})
        assert request.invocation_id.startswith("call_")
        assert request.raw_arguments == {}

    def test_function_not_an_object(self):
        with pytest.raises(OracleResponseError, match="Malformed function"):
            parse_tool_calls({"tool_calls": [{"id": "c1", "function": "edit_file"}]})

    def test_missing_function_name(self):
        with pytest.raises(OracleResponseError, match="no function name"):
            parse_tool_calls({"tool_calls": [{"id": "c1", "function": {"arguments": "{}"}}]})

    @pytest.mark.parametrize("raw_calls", ["edit_file", {"id": "c1"}, ["edit_file"]])
    def test_malformed_tool_calls(self, raw_calls):
        with pytest.raises(OracleResponseError):
            parse_tool_calls({"tool_calls": raw_calls})

    def test_no_tool_calls(self):
        assert parse_tool_calls({"content": "hi"}) == ()
        assert parse_tool_calls({"tool_calls": None}) == ()


# ===========================================================================
# OpenAIOracle
# ===========================================================================

class TestOpenAIOracle:
    def test_send_with_capabilities(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["payload"] = json.loads(request.content)
            return httpx.Response(
                200,
                json=_response(None, [_tool_call("call_1", "run_build", {})]),
            )

        oracle = OpenAIOracle(_make_client(handler), model="gpt-4o")
        descriptor = CapabilityDescriptor("run_build", "Build it")
        reply = oracle.send("system", [{"role": "user", "content": "fix"}], [descriptor])

        assert reply.wants_invocations
        assert reply.invocations[0].invocation_id == "call_1"
        assert reply.text == ""
        messages = captured["payload"]["messages"]
        assert messages[0] == {"role": "system", "content": "system"}
        assert messages[1] == {"role": "user", "content": "fix"}
        assert captured["payload"]["tools"] == [descriptor.to_openai()]
        assert captured["payload"]["model"] == "gpt-4o"
        oracle.close()

    def test_send_without_capabilities_omits_tools(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["payload"] = json.loads(request.content)
            return httpx.Response(200, json=_response("program x {}"))

        with OpenAIOracle(_make_client(handler)) as oracle:
            reply = oracle.send("system", [], [])
        assert "tools" not in captured["payload"]
        assert reply.text == "program x {}"
        assert not reply.wants_invocations

    def test_transport_error_wrapped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with OpenAIOracle(_make_client(handler)) as oracle:
            with pytest.raises(OracleCommunicationError, match="ConnectError"):
                oracle.send("system", [], [])

    def test_http_error_wrapped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "bad request"})

        with OpenAIOracle(_make_client(handler)) as oracle:
            with pytest.raises(OracleCommunicationError):
                oracle.send("system", [], [])

    def test_malformed_tool_call_is_a_response_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            bad_call = {"id": "call_1", "type": "function", "function": None}
            return httpx.Response(200, json=_response(None, [bad_call]))

        with OpenAIOracle(_make_client(handler)) as oracle:
            with pytest.raises(OracleResponseError) as exc_info:
                oracle.send("system", [], [])
        assert isinstance(exc_info.value, OracleCommunicationError)

    def test_format_results_correlates_ids(self):
        message = {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                _tool_call("call_1", "read_file_lines", {}),
                _tool_call("call_2", "edit_file", {}),
            ],
        }
        reply = OracleReply(invocations=parse_tool_calls(message), message=message)
        results = [
            Ok(value="1: line", invocation_id="call_1"),
            Err(message="bad range", kind=ErrorKind.CAPABILITY_EXECUTION, invocation_id="call_2"),
        ]
        oracle = OpenAIOracle(_make_client(lambda r: httpx.Response(200, json=_response())))
        formatted = oracle.format_results(reply, results)
        oracle.close()

        assert formatted[0] == message
        assert formatted[0] is not message
        assert formatted[1] == {"role": "tool", "tool_call_id": "call_1", "content": "1: line"}
        assert formatted[2] == {
            "role": "tool",
            "tool_call_id": "call_2",
            "content": "Error: bad range",
        }

    def test_satisfies_protocol(self):
        oracle = OpenAIOracle(_make_client(lambda r: httpx.Response(200, json=_response())))
        assert isinstance(oracle, OracleGateway)
        oracle.close()

    def test_descriptor_schema_in_payload(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["payload"] = json.loads(request.content)
            return httpx.Response(200, json=_response())

        descriptor = CapabilityDescriptor("read", "Read", [param("file_path")])
        with OpenAIOracle(_make_client(handler)) as oracle:
            oracle.send("s", [], [descriptor])
        tool = captured["payload"]["tools"][0]["function"]
        assert tool["parameters"]["required"] == ["file_path"]
