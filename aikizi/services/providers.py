# aikizi/services/providers.py
"""
Gateway hacia los modelos de visión (OpenAI / Gemini).

- El modelo se resuelve UNA vez en el borde de la API (`resolve_model`) a una
  variante tipada: OpenAIModel o GeminiModel. Aquí dentro no se mira el nombre.
- `decode()` devuelve el texto crudo del modelo (aún sin validar).
- Timeout y cancelación abortan la llamada en curso (se cancela la task),
  no solo se ignora su resultado.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import ClassVar, Dict, Optional, Union

import httpx
import openai

from aikizi.errors import (
    ConfigurationError,
    EmptyResponse,
    InvalidInput,
    ProviderCanceled,
    ProviderError,
    ProviderRejected,
    ProviderTimeout,
    ProviderUnavailable,
)

log = logging.getLogger(__name__)

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"

DECODE_PROMPT = """Analyze this image and return a JSON object with the following structure:
{
  "styleCodes": ["--sref 123456789", "--profile abc", "--moodboard xyz"],
  "tags": ["minimalist", "modern", "clean", "geometric"],
  "subjects": ["abstract shapes", "architecture", "composition"],
  "prompts": {
    "story": "A narrative prompt describing the image's story",
    "mix": "A Midjourney prompt mixing styles: /imagine prompt: ...",
    "expand": "An expanded detailed prompt for regeneration",
    "sound": "A sound design prompt describing the audio atmosphere"
  }
}

Focus on:
- Style codes: Midjourney style references (--sref), profiles, moodboards
- Tags: Style descriptors, techniques, mood
- Subjects: Main visual elements
- Prompts: Creative variations for different use cases

Return ONLY valid JSON, no markdown formatting."""


# ---------------------------------------------------------
# Modelos soportados
# ---------------------------------------------------------
@dataclass(frozen=True)
class OpenAIModel:
    id: str
    provider: ClassVar[str] = "openai"


@dataclass(frozen=True)
class GeminiModel:
    id: str
    provider: ClassVar[str] = "gemini"


ModelId = Union[OpenAIModel, GeminiModel]

MODELS: Dict[str, ModelId] = {
    "gpt-5": OpenAIModel("gpt-5"),
    "gpt-5-mini": OpenAIModel("gpt-5-mini"),
    "gemini-2.5-pro": GeminiModel("gemini-2.5-pro"),
    "gemini-2.5-flash": GeminiModel("gemini-2.5-flash"),
}


def resolve_model(name: Optional[str]) -> ModelId:
    key = name.strip().lower() if isinstance(name, str) else ""
    model = MODELS.get(key)
    if model is None:
        raise InvalidInput(f"Unsupported model: {name!r}. Use one of: {', '.join(MODELS)}")
    return model


# ---------------------------------------------------------
# Imagen de entrada
# ---------------------------------------------------------
@dataclass(frozen=True)
class ImageInput:
    """base64 + mime_type, o bien una URL pública."""

    base64: Optional[str] = None
    mime_type: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "ImageInput":
        return cls(base64=base64.b64encode(data).decode("ascii"), mime_type=mime_type)

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


def _status_error(provider: str, status: int, detail: str) -> ProviderError:
    detail = f"{provider} http {status}: {(detail or '')[:200]}"
    if status >= 500 or status == 429:
        return ProviderUnavailable(detail)
    return ProviderRejected(detail)


class ProviderGateway:
    def __init__(
        self,
        openai_api_key: Optional[str] = None,
        gemini_api_key: Optional[str] = None,
        gemini_base_url: Optional[str] = None,
        openai_base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metadata_timeout: float = 15.0,
        prompt: str = DECODE_PROMPT,
    ) -> None:
        self.openai_api_key = openai_api_key
        self.gemini_api_key = gemini_api_key
        self.gemini_base_url = (gemini_base_url or DEFAULT_GEMINI_BASE_URL).rstrip("/")
        self.openai_base_url = openai_base_url
        self.transport = transport
        self.metadata_timeout = metadata_timeout
        self.prompt = prompt

    @classmethod
    def from_config(cls, config) -> "ProviderGateway":
        return cls(
            openai_api_key=config.get("OPENAI_API_KEY"),
            gemini_api_key=config.get("GEMINI_API_KEY"),
            gemini_base_url=config.get("GEMINI_BASE_URL"),
            openai_base_url=config.get("OPENAI_BASE_URL"),
            metadata_timeout=float(config.get("METADATA_TIMEOUT_SECONDS", 15)),
        )

    def ensure_configured(self, model: ModelId) -> None:
        if isinstance(model, OpenAIModel) and not self.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        if isinstance(model, GeminiModel) and not self.gemini_api_key:
            raise ConfigurationError("GEMINI_API_KEY is not configured")

    # -----------------------------------------------------------
    # API
    # -----------------------------------------------------------
    async def decode(
        self,
        image: ImageInput,
        model: ModelId,
        timeout: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        self.ensure_configured(model)

        call = asyncio.ensure_future(self._dispatch(image, model, timeout))
        waiters = {call}
        canceled = None
        if cancel_event is not None:
            canceled = asyncio.ensure_future(cancel_event.wait())
            waiters.add(canceled)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if canceled is not None and not canceled.done():
                canceled.cancel()

        if call in done:
            return call.result()

        # abortar la llamada en curso
        call.cancel()
        await asyncio.gather(call, return_exceptions=True)

        if canceled is not None and canceled in done:
            log.info("[provider] %s llamada abortada por cancelación", model.provider)
            raise ProviderCanceled("cancel requested during provider call")
        log.warning("[provider] %s timeout tras %ss", model.provider, timeout)
        raise ProviderTimeout(f"{model.provider} exceeded {timeout}s")

    # -----------------------------------------------------------
    # DESPACHO
    # -----------------------------------------------------------
    async def _dispatch(self, image: ImageInput, model: ModelId, timeout: float) -> str:
        if isinstance(model, OpenAIModel):
            text = await self._call_openai(image, model, timeout)
        elif isinstance(model, GeminiModel):
            text = await self._call_gemini(image, model, timeout)
        else:
            raise ConfigurationError(f"No provider for model {model!r}")

        text = (text or "").strip()
        if not text:
            raise EmptyResponse(f"{model.provider} returned no text")
        return text

    async def _call_openai(self, image: ImageInput, model: OpenAIModel, timeout: float) -> str:
        image_url = image.url or image.data_url()
        async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as http:
            client = openai.AsyncOpenAI(
                api_key=self.openai_api_key,
                base_url=self.openai_base_url,
                http_client=http,
                max_retries=0,
                timeout=timeout,
            )
            try:
                resp = await client.chat.completions.create(
                    model=model.id,
                    messages=[
                        {"role": "system", "content": self.prompt},
                        {
                            "role": "user",
                            "content": [
                                {"type": "text", "text": "Decode this image."},
                                {"type": "image_url", "image_url": {"url": image_url}},
                            ],
                        },
                    ],
                )
            except openai.APITimeoutError as e:
                raise ProviderTimeout(f"openai: {e}")
            except openai.APIConnectionError as e:
                raise ProviderUnavailable(f"openai: {e}")
            except openai.APIStatusError as e:
                raise _status_error("openai", e.status_code, e.message)

        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""

    async def _call_gemini(self, image: ImageInput, model: GeminiModel, timeout: float) -> str:
        async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as http:
            if image.base64:
                b64, mime = image.base64, image.mime_type or "image/jpeg"
            else:
                b64, mime = await self._download(http, image.url)

            body = {
                "contents": [
                    {
                        "role": "user",
                        "parts": [
                            {"text": self.prompt},
                            {"inline_data": {"mime_type": mime, "data": b64}},
                        ],
                    }
                ]
            }
            url = f"{self.gemini_base_url}/v1beta/models/{model.id}:generateContent"
            try:
                resp = await http.post(url, params={"key": self.gemini_api_key}, json=body)
            except httpx.TimeoutException as e:
                raise ProviderTimeout(f"gemini: {e}")
            except httpx.TransportError as e:
                raise ProviderUnavailable(f"gemini: {e}")

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if resp.status_code >= 400:
            message = ((data or {}).get("error") or {}).get("message") or resp.text
            raise _status_error("gemini", resp.status_code, message)

        feedback = (data or {}).get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise ProviderRejected(f"gemini blocked: {feedback['blockReason']}")

        candidates = (data or {}).get("candidates") or [{}]
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        return "\n".join(p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))

    async def _download(self, http: httpx.AsyncClient, url: Optional[str]):
        if not url:
            raise ProviderRejected("image has neither bytes nor url")
        try:
            resp = await http.get(url, timeout=self.metadata_timeout, follow_redirects=True)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"image download: {e}")
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"image download: {e}")
        if resp.status_code >= 400:
            raise ProviderRejected(f"image download http {resp.status_code}")

        mime = (resp.headers.get("content-type") or "image/jpeg").split(";")[0].strip()
        if not mime.startswith("image/"):
            raise ProviderRejected(f"url is not an image ({mime})")
        return base64.b64encode(resp.content).decode("ascii"), mime
