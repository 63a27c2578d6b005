# prealert/infra/openai_speech.py
"""
OpenAI adapters for the narration and speech steps.

- ``OpenAINarrationGenerator``: Responses API, fixed instructions from
  ``prealert.core.prompts``.
- ``OpenAIAudioSynthesizer``: audio/speech API, MP3 output.

Neither adapter retries. Failures are classified and raised so the
workflow engine can decide:

- timeouts, connection errors, 408/409/429, 5xx → TransientServiceError
- any other 4xx (bad input, bad key, unknown model) → ServiceRejectedError

``base_url`` can point at an AI gateway instead of api.openai.com.
"""
from __future__ import annotations

import json
from typing import Any

import httpx

from prealert.core.domain import DispatchEvent
from prealert.core.errors import ServiceRejectedError, TransientServiceError
from prealert.core.prompts import TTS_INSTRUCTIONS, narration_instructions
from prealert.infra.logging_config import get_logger
from prealert.infra.metrics import inc_counter

logger = get_logger(__name__)

_TRANSIENT_STATUS = {408, 409, 429}


def narration_input(event: DispatchEvent | str) -> str:
    """Model input: raw text as-is, or the JSON of nature/address/city."""
    if isinstance(event, str):
        return event
    return json.dumps({
        "nature": event.nature,
        "address": event.address,
        "city": event.city,
    })


def _extract_output_text(data: dict[str, Any]) -> str:
    """Concatenate the ``output_text`` parts of a Responses API payload."""
    if isinstance(data.get("output_text"), str):
        return data["output_text"]
    parts: list[str] = []
    for item in data.get("output", []):
        if item.get("type") != "message":
            continue
        for content in item.get("content", []):
            if content.get("type") == "output_text":
                parts.append(content.get("text", ""))
    return "".join(parts)


class _OpenAIClient:
    """Shared request/classification logic."""

    service = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            inc_counter("openai_requests_failed", service=self.service, reason="timeout")
            raise TransientServiceError(f"{self.service} request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            inc_counter("openai_requests_failed", service=self.service, reason="transport")
            raise TransientServiceError(f"{self.service} request failed: {type(exc).__name__}: {exc}") from exc

        if resp.status_code >= 400:
            detail = resp.text[:300]
            inc_counter("openai_requests_failed", service=self.service, reason=str(resp.status_code))
            if resp.status_code >= 500 or resp.status_code in _TRANSIENT_STATUS:
                raise TransientServiceError(
                    f"{self.service} returned HTTP {resp.status_code}: {detail}"
                )
            logger.error(
                "%s rejected request (HTTP %d), not retryable",
                self.service, resp.status_code,
            )
            raise ServiceRejectedError(
                f"{self.service} rejected request with HTTP {resp.status_code}: {detail}"
            )

        inc_counter("openai_requests_total", service=self.service)
        return resp


class OpenAINarrationGenerator(_OpenAIClient):
    """Dispatch event → narration text."""

    service = "narration"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4.1-nano",
        mode: str = "structured",
        **kwargs,
    ):
        super().__init__(api_key, **kwargs)
        self._model = model
        self._instructions = narration_instructions(mode)

    async def generate_narration(self, event: DispatchEvent | str) -> str:
        resp = await self._post("/responses", {
            "model": self._model,
            "instructions": self._instructions,
            "input": narration_input(event),
        })
        try:
            text = _extract_output_text(resp.json()).strip()
        except ValueError as exc:
            raise TransientServiceError(f"narration returned invalid JSON: {exc}") from exc
        if not text:
            raise TransientServiceError("narration returned empty output")
        return text


class OpenAIAudioSynthesizer(_OpenAIClient):
    """Narration text → MP3 bytes."""

    service = "speech"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini-tts",
        voice: str = "nova",
        instructions: str = TTS_INSTRUCTIONS,
        **kwargs,
    ):
        super().__init__(api_key, **kwargs)
        self._model = model
        self._voice = voice
        self._instructions = instructions

    async def synthesize_audio(self, text: str) -> bytes:
        if not text or not text.strip():
            raise ServiceRejectedError("Cannot synthesize empty narration")
        resp = await self._post("/audio/speech", {
            "model": self._model,
            "voice": self._voice,
            "instructions": self._instructions,
            "input": text,
            "response_format": "mp3",
        })
        if not resp.content:
            raise TransientServiceError("speech returned empty audio")
        return resp.content


def get_narration_generator() -> OpenAINarrationGenerator:
    """Create the narration generator from app config."""
    from prealert.config import settings

    return OpenAINarrationGenerator(
        settings.openai_api_key or "",
        model=settings.narration_model,
        mode=settings.narration_mode,
        base_url=settings.openai_base_url,
        timeout=settings.openai_timeout_seconds,
    )


def get_audio_synthesizer() -> OpenAIAudioSynthesizer:
    """Create the audio synthesizer from app config."""
    from prealert.config import settings

    return OpenAIAudioSynthesizer(
        settings.openai_api_key or "",
        model=settings.tts_model,
        voice=settings.tts_voice,
        base_url=settings.openai_base_url,
        timeout=settings.openai_timeout_seconds,
    )
