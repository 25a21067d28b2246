from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, ClassVar, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


def _build_base_url(host: str, port: int) -> str:
    trimmed = host.rstrip("/")
    if ":" in trimmed.rsplit("/", maxsplit=1)[-1]:
        return trimmed
    return f"{trimmed}:{port}"


def _messages_from_text(
    prompt: str,
    system_prompt: str | None = None,
) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


LLM_MAX_RETRIES = 3
LLM_BASE_DELAY = 1.0  # seconds
LLM_MAX_DELAY = 10.0  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_RESET_TIME = 30.0  # seconds

LLM_UNAVAILABLE_MARKER = "[LLM_UNAVAILABLE]"


def is_llm_unavailable(response: str) -> bool:
    """Check if a response indicates the model could not be reached."""
    return response.startswith(LLM_UNAVAILABLE_MARKER)


@dataclass
class LLMService:
    """LangChain client for the local Ollama model used by the analyzer and agents.

    ``generate`` never raises for transport problems. Callers receive a string
    starting with :data:`LLM_UNAVAILABLE_MARKER` and decide how to degrade.
    """

    settings: Settings
    _client: Any
    model: str
    default_system_prompt: str = (
        "You are a careful legal assistant. Be precise, structured, and cite authorities when you rely on them."
    )
    _client_cache: ClassVar[dict[str, Any]] = {}
    _consecutive_failures: ClassVar[int] = 0
    _last_failure_time: ClassVar[float] = 0.0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMService":
        model_name = model or settings.ollama.model
        if client is None:
            cache_key = f"{settings.ollama.host}:{settings.ollama.port}:{model_name}"
            cached = cls._client_cache.get(cache_key)
            if cached is None:
                base_url = _build_base_url(settings.ollama.host, settings.ollama.port)
                cached = ChatOllama(model=model_name, base_url=base_url, temperature=0.1)
                cls._client_cache[cache_key] = cached
            client = cached
        return cls(settings=settings, _client=client, model=model_name)

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Generate text with retry, a shared circuit breaker and graceful degradation."""
        messages = _messages_from_text(prompt, system_prompt or self.default_system_prompt)
        client = self._client

        options: dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if options and hasattr(client, "with_options"):
            client = client.with_options(**options)

        if self._circuit_open():
            return f"{LLM_UNAVAILABLE_MARKER} LLM temporarily unavailable. Circuit breaker open."

        timeout = self.settings.ollama.request_timeout_seconds
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(LLM_MAX_RETRIES),
                wait=wait_exponential(multiplier=LLM_BASE_DELAY, max=LLM_MAX_DELAY),
            ):
                with attempt:
                    try:
                        result = await asyncio.wait_for(client.ainvoke(messages), timeout=timeout)
                    except Exception as exc:
                        LLMService._consecutive_failures += 1
                        LLMService._last_failure_time = time.time()
                        logger.warning(
                            "llm_generation_retry",
                            attempt=attempt.retry_state.attempt_number,
                            max_attempts=LLM_MAX_RETRIES,
                            error=str(exc) or type(exc).__name__,
                            model=self.model,
                        )
                        raise
        except RetryError as exc:
            last_error = exc.last_attempt.exception() if exc.last_attempt else exc
            logger.error(
                "llm_generation_failed",
                error=str(last_error) or type(last_error).__name__,
                model=self.model,
                host=self.settings.ollama.host,
                attempts=LLM_MAX_RETRIES,
            )
            return f"{LLM_UNAVAILABLE_MARKER} LLM generation failed after {LLM_MAX_RETRIES} attempts."

        LLMService._consecutive_failures = 0
        return _extract_content(result)

    def _circuit_open(self) -> bool:
        if LLMService._consecutive_failures < CIRCUIT_BREAKER_THRESHOLD:
            return False
        elapsed = time.time() - LLMService._last_failure_time
        if elapsed >= CIRCUIT_BREAKER_RESET_TIME:
            logger.info("llm_circuit_breaker_reset", time_since_failure=elapsed, model=self.model)
            LLMService._consecutive_failures = 0
            return False
        logger.warning(
            "llm_circuit_breaker_open",
            consecutive_failures=LLMService._consecutive_failures,
            time_until_reset=CIRCUIT_BREAKER_RESET_TIME - elapsed,
            model=self.model,
        )
        return True


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(str(item) for item in content)
    return str(content)
