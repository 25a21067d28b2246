from __future__ import annotations

import time

import pytest
from langchain_core.messages import AIMessage, SystemMessage

from legalflow.core.config import get_settings
from legalflow.services.llm import (
    CIRCUIT_BREAKER_THRESHOLD,
    LLMService,
    _build_base_url,
    is_llm_unavailable,
)


class RecordingClient:
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.messages: list = []

    async def ainvoke(self, messages):
        self.messages.append(messages)
        return AIMessage(content=self.reply)


@pytest.fixture(autouse=True)
def reset_breaker(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(LLMService, "_consecutive_failures", 0)
    monkeypatch.setattr(LLMService, "_last_failure_time", 0.0)


def test_base_url_keeps_explicit_port() -> None:
    assert _build_base_url("http://localhost", 11434) == "http://localhost:11434"
    assert _build_base_url("http://ollama:9000/", 11434) == "http://ollama:9000"


@pytest.mark.asyncio
async def test_generate_returns_model_text() -> None:
    client = RecordingClient("Six years.")
    service = LLMService.from_settings(get_settings(), client=client)

    response = await service.generate("How long?", system_prompt="Be brief.")

    assert response == "Six years."
    [messages] = client.messages
    assert isinstance(messages[0], SystemMessage)
    assert messages[0].content == "Be brief."


@pytest.mark.asyncio
async def test_open_circuit_short_circuits_to_marker() -> None:
    client = RecordingClient("unused")
    service = LLMService.from_settings(get_settings(), client=client)
    LLMService._consecutive_failures = CIRCUIT_BREAKER_THRESHOLD
    LLMService._last_failure_time = time.time()

    response = await service.generate("How long?")

    assert is_llm_unavailable(response)
    assert client.messages == []
