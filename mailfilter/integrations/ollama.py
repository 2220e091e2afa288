"""Async client for the Ollama REST API."""

import logging
from typing import Any

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class OllamaResponse(BaseModel):
    """Raw response from Ollama's /api/chat endpoint (non-streaming)."""

    model: str
    message: dict
    done: bool
    done_reason: str = ""
    total_duration: int = 0
    load_duration: int = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0


class OllamaClient:
    """Async HTTP client for Ollama.

    Usage::

        async with OllamaClient(base_url) as client:
            text, raw = await client.chat(
                model="qwen2.5",
                system="You are an email filtering assistant.",
                prompt="Classify these emails: ...",
                format="json",
            )
    """

    def __init__(
        self,
        base_url: str,
        *,
        default_keep_alive: str = "5m",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_keep_alive = default_keep_alive
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
        )

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def chat(
        self,
        model: str,
        system: str,
        prompt: str,
        *,
        format: str | dict[str, Any] | None = None,
        temperature: float = 0.1,
        keep_alive: str | None = None,
    ) -> tuple[str, OllamaResponse]:
        """Send a single-turn chat and return the assistant's text.

        Args:
            model: Ollama model name (e.g., "gemma3", "qwen2.5").
            system: System prompt with instructions for the LLM.
            prompt: User prompt.
            format: ``"json"`` or a JSON schema dict to constrain the output.
                The returned text is not validated here.
            temperature: Sampling temperature. Lower = more deterministic.
            keep_alive: How long to keep the model loaded after this request.
                Defaults to the client's default_keep_alive.

        Returns:
            Tuple of (message content, raw OllamaResponse).

        Raises:
            httpx.HTTPStatusError: On non-2xx response from Ollama.
            httpx.TransportError: On connection failures and timeouts.
        """
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
            "keep_alive": keep_alive or self._default_keep_alive,
            "options": {
                "temperature": temperature,
            },
        }
        if format is not None:
            payload["format"] = format

        response = await self._client.post("/api/chat", json=payload)
        response.raise_for_status()

        raw = OllamaResponse.model_validate(response.json())
        content = raw.message.get("content", "")

        logger.debug(
            "Ollama %s: %d prompt tokens, %d eval tokens, %.1fs total",
            model,
            raw.prompt_eval_count,
            raw.eval_count,
            raw.total_duration / 1e9,
        )

        return content, raw

    async def list_models(self) -> list[dict]:
        """List models available on the Ollama server."""
        response = await self._client.get("/api/tags")
        response.raise_for_status()
        return response.json().get("models", [])

    async def pick_instruct_model(self) -> str | None:
        """Auto-detect the best instruct/chat model available on the server."""
        models = await self.list_models()
        return pick_instruct_model(models)


def pick_instruct_model(models: list[dict]) -> str | None:
    """Select the best instruct/chat model from a list of Ollama models.

    Prefers models with 'instruct', 'chat', 'qwen', or 'gemma' in the name.
    Falls back to the first available model if none match.

    Args:
        models: List of model dicts from Ollama's /api/tags endpoint.

    Returns:
        Model name string, or None if the list is empty.
    """
    for m in models:
        name = m["name"].lower()
        if "instruct" in name or "chat" in name or "qwen" in name or "gemma" in name:
            return m["name"]
    return models[0]["name"] if models else None
