"""Vision-capable LLM providers for screenshot price extraction.

Providers are plain config records sharing one capability,
``invoke(prompt, image_bytes) -> text``; ``VisionProvider`` is the union of them.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"
DEFAULT_OPENROUTER_MODEL = "google/gemini-3-flash-preview"


def _data_url(image_bytes: bytes) -> str:
    return f"data:image/png;base64,{base64.b64encode(image_bytes).decode('ascii')}"


def extract_output_text(payload: Any) -> str:
    """
    Pull the model text out of a provider response envelope.

    Handles the Responses API (``output_text`` or ``output[].content[].text``)
    and Chat Completions (``choices[].message.content`` as string or parts).
    """
    if not isinstance(payload, dict):
        return ""

    output_text = payload.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text

    if isinstance(payload.get("output"), list):
        parts = []
        for item in payload["output"]:
            for content in (item or {}).get("content") or []:
                if isinstance(content, dict) and isinstance(content.get("text"), str):
                    parts.append(content["text"])
        return "\n".join(parts).strip()

    if isinstance(payload.get("choices"), list):
        parts = []
        for choice in payload["choices"]:
            content = ((choice or {}).get("message") or {}).get("content")
            if isinstance(content, str):
                parts.append(content)
            elif isinstance(content, list):
                for chunk in content:
                    if isinstance(chunk, dict) and isinstance(chunk.get("text"), str):
                        parts.append(chunk["text"])
        return "\n".join(parts).strip()

    return ""


@dataclass(frozen=True)
class OpenAIVisionProvider:
    """OpenAI Responses API."""

    api_key: str
    model: str = DEFAULT_OPENAI_MODEL
    timeout_seconds: float = 60.0
    name: str = "openai"

    async def invoke(self, prompt: str, image_bytes: bytes) -> str:
        async with AsyncOpenAI(api_key=self.api_key, timeout=self.timeout_seconds) as client:
            response = await client.responses.create(
                model=self.model,
                input=[{
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": prompt},
                        {"type": "input_image", "image_url": _data_url(image_bytes)},
                    ],
                }],
            )
        return extract_output_text(response.model_dump())


@dataclass(frozen=True)
class OpenRouterVisionProvider:
    """OpenRouter chat completions (OpenAI-compatible endpoint)."""

    api_key: str
    model: str = DEFAULT_OPENROUTER_MODEL
    timeout_seconds: float = 60.0
    http_referer: str = ""
    title: str = ""
    name: str = "openrouter"

    async def invoke(self, prompt: str, image_bytes: bytes) -> str:
        headers = {}
        if self.http_referer:
            headers["HTTP-Referer"] = self.http_referer
        if self.title:
            headers["X-Title"] = self.title

        async with AsyncOpenAI(
            api_key=self.api_key,
            base_url=OPENROUTER_BASE_URL,
            default_headers=headers or None,
            timeout=self.timeout_seconds,
        ) as client:
            response = await client.chat.completions.create(
                model=self.model,
                temperature=0,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": _data_url(image_bytes)}},
                    ],
                }],
            )
        return extract_output_text(response.model_dump())


VisionProvider = Union[OpenAIVisionProvider, OpenRouterVisionProvider]


def select_provider(
    preferred: Optional[str] = None,
    openai_api_key: str = "",
    openrouter_api_key: str = "",
    model: Optional[str] = None,
    timeout_seconds: float = 60.0,
    openrouter_http_referer: str = "",
    openrouter_title: str = "",
) -> Optional[VisionProvider]:
    """
    Choose a provider deterministically.

    An explicitly preferred provider wins when its key is set; otherwise
    OpenRouter takes precedence over OpenAI. Returns None without any key.
    """
    def openai_provider() -> OpenAIVisionProvider:
        return OpenAIVisionProvider(
            api_key=openai_api_key,
            model=model or DEFAULT_OPENAI_MODEL,
            timeout_seconds=timeout_seconds,
        )

    def openrouter_provider() -> OpenRouterVisionProvider:
        return OpenRouterVisionProvider(
            api_key=openrouter_api_key,
            model=model or DEFAULT_OPENROUTER_MODEL,
            timeout_seconds=timeout_seconds,
            http_referer=openrouter_http_referer,
            title=openrouter_title,
        )

    preferred = str(preferred or "").strip().lower()
    if preferred == "openai" and openai_api_key:
        return openai_provider()
    if preferred == "openrouter" and openrouter_api_key:
        return openrouter_provider()
    if openrouter_api_key:
        return openrouter_provider()
    if openai_api_key:
        return openai_provider()
    return None
