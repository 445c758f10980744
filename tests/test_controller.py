"""Tests for the relay controller: validation, credential, re-framing, teardown."""

from __future__ import annotations

import json

import httpx
import pytest

from chat_relay.config import UpstreamSpec
from chat_relay.errors import ConfigurationError, UpstreamRateLimitError, ValidationError
from chat_relay.relay.controller import RelayController, build_messages, validate_prompt
from chat_relay.relay.upstream import UpstreamClient
from chat_relay.wire import encode_delta, encode_done, encode_error
from helpers import ChunkedStream, event_stream, upstream_body


def _controller(spec: UpstreamSpec, handler) -> RelayController:
    upstream = UpstreamClient(spec, transport=httpx.MockTransport(handler))
    return RelayController(spec, upstream=upstream)


async def _frames(controller: RelayController, stream, is_disconnected=None) -> list[str]:
    return [f async for f in controller.relay(stream, is_disconnected)]


class TestValidation:
    @pytest.mark.parametrize("prompt", ["", "   \n\t", None, 42, ["hi"]])
    def test_rejects(self, prompt):
        with pytest.raises(ValidationError):
            validate_prompt(prompt)

    def test_trims(self):
        assert validate_prompt("  hello  ") == "hello"

    def test_build_messages_appends_prompt(self):
        prior = [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
        ]
        assert build_messages(prior, "How are you?") == prior + [
            {"role": "user", "content": "How are you?"},
        ]

    def test_build_messages_without_history(self):
        assert build_messages(None, "x") == [{"role": "user", "content": "x"}]

    def test_build_messages_rejects_bad_entries(self):
        with pytest.raises(ValidationError):
            build_messages([{"content": "no role"}], "x")


class TestOpen:
    async def test_empty_prompt_never_reaches_upstream(self, upstream_spec):
        calls = []
        controller = _controller(upstream_spec, lambda r: calls.append(r))
        with pytest.raises(ValidationError):
            await controller.open("   ", None, [])
        assert calls == []
        await controller.aclose()

    async def test_missing_credential(self, upstream_spec, caplog):
        upstream_spec.api_key = ""
        calls = []
        controller = _controller(upstream_spec, lambda r: calls.append(r))
        with pytest.raises(ConfigurationError) as exc_info:
            await controller.open("Hello", None, [])
        assert exc_info.value.status_code == 500
        assert calls == []
        assert "DEEPSEEK_API_KEY" in caplog.text
        await controller.aclose()

    async def test_credential_from_env(self, upstream_spec, monkeypatch):
        upstream_spec.api_key = ""
        monkeypatch.setenv("DEEPSEEK_API_KEY", "env-key")
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            return event_stream(ChunkedStream([upstream_body("ok")]))

        controller = _controller(upstream_spec, handler)
        stream = await controller.open("Hello", None, [])
        await stream.aclose()
        assert seen["auth"] == "Bearer env-key"
        await controller.aclose()

    async def test_sends_history_plus_trimmed_prompt(self, upstream_spec):
        seen = {}

        def handler(request):
            seen["messages"] = json.loads(request.content)["messages"]
            return event_stream(ChunkedStream([upstream_body("ok")]))

        controller = _controller(upstream_spec, handler)
        prior = [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Hey"}]
        stream = await controller.open("  Next question  ", "conv_1", prior)
        await stream.aclose()
        assert seen["messages"] == prior + [{"role": "user", "content": "Next question"}]
        await controller.aclose()

    async def test_upstream_status_raised_before_streaming(self, upstream_spec):
        controller = _controller(
            upstream_spec, lambda r: httpx.Response(429, headers={"Retry-After": "3"}),
        )
        with pytest.raises(UpstreamRateLimitError) as exc_info:
            await controller.open("Hello", None, [])
        assert exc_info.value.retry_after == 3.0
        await controller.aclose()


class TestRelay:
    async def test_frames(self, upstream_spec):
        body = ChunkedStream([upstream_body("Hi", " there")])
        controller = _controller(upstream_spec, lambda r: event_stream(body))
        stream = await controller.open("Hello", None, [])

        frames = await _frames(controller, stream)

        assert frames == [encode_delta("Hi"), encode_delta(" there"), encode_done()]
        assert body.closed
        await controller.aclose()

    async def test_natural_end_is_done(self, upstream_spec):
        body = ChunkedStream([upstream_body("a", done=False)])
        controller = _controller(upstream_spec, lambda r: event_stream(body))
        stream = await controller.open("Hello", None, [])
        assert await _frames(controller, stream) == [encode_delta("a"), encode_done()]
        await controller.aclose()

    async def test_malformed_upstream_line_skipped(self, upstream_spec):
        body = ChunkedStream([upstream_body("a", done=False), "data: {bad\n", upstream_body("b")])
        controller = _controller(upstream_spec, lambda r: event_stream(body))
        stream = await controller.open("Hello", None, [])
        frames = await _frames(controller, stream)
        assert frames == [encode_delta("a"), encode_delta("b"), encode_done()]
        await controller.aclose()

    async def test_disconnect_stops_relaying(self, upstream_spec):
        body = ChunkedStream([upstream_body("a", "b", "c")])
        controller = _controller(upstream_spec, lambda r: event_stream(body))
        stream = await controller.open("Hello", None, [])
        polls = []

        async def is_disconnected() -> bool:
            polls.append(1)
            return len(polls) > 1

        frames = await _frames(controller, stream, is_disconnected)

        assert frames == [encode_delta("a")]
        assert body.closed
        await controller.aclose()

    async def test_consumer_closing_early_closes_upstream(self, upstream_spec):
        body = ChunkedStream([upstream_body("a", done=False)], hang=True)
        controller = _controller(upstream_spec, lambda r: event_stream(body))
        stream = await controller.open("Hello", None, [])

        frames = controller.relay(stream)
        assert await frames.__anext__() == encode_delta("a")
        await frames.aclose()

        assert body.closed
        await controller.aclose()

    async def test_mid_stream_failure_is_in_band(self, upstream_spec):
        body = ChunkedStream(
            [upstream_body("partial", done=False)], error=httpx.ReadError("reset"),
        )
        controller = _controller(upstream_spec, lambda r: event_stream(body))
        stream = await controller.open("Hello", None, [])

        frames = await _frames(controller, stream)

        assert frames == [encode_delta("partial"), encode_error()]
        assert body.closed
        await controller.aclose()


class TestComplete:
    async def test_complete(self, upstream_spec):
        controller = _controller(upstream_spec, lambda r: httpx.Response(200, json={
            "choices": [{"message": {"content": "Whole answer"}}],
        }))
        assert await controller.complete("Hello", None, []) == "Whole answer"
        await controller.aclose()

    async def test_complete_validates(self, upstream_spec):
        controller = _controller(upstream_spec, lambda r: httpx.Response(200))
        with pytest.raises(ValidationError):
            await controller.complete("", None, [])
        await controller.aclose()
