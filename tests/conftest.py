"""Shared fixtures for relay and client tests."""

from __future__ import annotations

import pytest

from chat_relay.config import ClientSpec, UpstreamSpec


@pytest.fixture
def upstream_spec(monkeypatch) -> UpstreamSpec:
    monkeypatch.delenv("DEEPSEEK_API_KEY", raising=False)
    monkeypatch.delenv("MODEL_NAME", raising=False)
    return UpstreamSpec(url="http://upstream.test/v1", api_key="test-key")


@pytest.fixture
def client_spec() -> ClientSpec:
    return ClientSpec(base_url="http://relay.test", frame_interval=0, backoff_base=0)
