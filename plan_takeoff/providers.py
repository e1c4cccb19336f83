"""
providers.py — Vision model backends for plan takeoff.

Three independent models look at the same plan page images: OpenAI,
Anthropic and Gemini. Each backend takes (images, system_prompt,
user_prompt) and returns the model's raw text; parsing lives in
extraction.py so every backend gets the same lenient treatment.

Clients are always injected. `build_providers()` makes real SDK clients
from the configured API keys and leaves out any provider without one.

All providers are called together. A provider that errors or times out
only loses its own slot; the others' answers still get merged.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from plan_takeoff.config import ProviderConfig, config

logger = logging.getLogger(__name__)


class VisionProvider(Protocol):
    name: str

    async def analyze(self, images: Sequence[str], system_prompt: str, user_prompt: str) -> str: ...


@dataclass
class ProviderResponse:
    provider: str
    text: str = ""
    error: Optional[str] = None
    elapsed: float = 0.0


def split_data_url(image: str) -> Tuple[str, str]:
    """
    Split an image reference into (media_type, base64_data).

    Accepts `data:image/png;base64,....` URLs or bare base64, which is
    assumed to be PNG.
    """
    if image.startswith("data:"):
        header, _, data = image.partition(",")
        media_type = header[5:].split(";", 1)[0] or "image/png"
        return media_type, data
    return "image/png", image


def to_data_url(image: str) -> str:
    media_type, data = split_data_url(image)
    return f"data:{media_type};base64,{data}"


class OpenAIVisionProvider:
    name = "openai"

    def __init__(self, client, model: Optional[str] = None, provider_config: Optional[ProviderConfig] = None):
        self._client = client
        self._cfg = provider_config or config.providers
        self.model = model or self._cfg.openai_model

    async def analyze(self, images: Sequence[str], system_prompt: str, user_prompt: str) -> str:
        content = [{"type": "text", "text": user_prompt}]
        for image in images:
            content.append({
                "type": "image_url",
                "image_url": {"url": to_data_url(image), "detail": "high"},
            })
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
            max_tokens=self._cfg.max_tokens,
            temperature=self._cfg.temperature,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""


class AnthropicVisionProvider:
    name = "claude"

    def __init__(self, client, model: Optional[str] = None, provider_config: Optional[ProviderConfig] = None):
        self._client = client
        self._cfg = provider_config or config.providers
        self.model = model or self._cfg.anthropic_model

    async def analyze(self, images: Sequence[str], system_prompt: str, user_prompt: str) -> str:
        content = []
        for image in images:
            media_type, data = split_data_url(image)
            content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": data},
            })
        content.append({"type": "text", "text": user_prompt})

        message = await self._client.messages.create(
            model=self.model,
            max_tokens=self._cfg.max_tokens,
            temperature=self._cfg.temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": content}],
        )
        return "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )


class GeminiVisionProvider:
    name = "gemini"

    def __init__(self, client, model: Optional[str] = None, provider_config: Optional[ProviderConfig] = None):
        self._client = client
        self._cfg = provider_config or config.providers
        self.model = model or self._cfg.gemini_model

    async def analyze(self, images: Sequence[str], system_prompt: str, user_prompt: str) -> str:
        from google.genai import types

        contents: List = [user_prompt]
        for image in images:
            media_type, data = split_data_url(image)
            contents.append(types.Part.from_bytes(data=base64.b64decode(data), mime_type=media_type))

        response = await self._client.aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(
                system_instruction=system_prompt,
                temperature=self._cfg.temperature,
                max_output_tokens=self._cfg.max_tokens,
                response_mime_type="application/json",
            ),
        )
        return response.text or ""


def build_providers(provider_config: Optional[ProviderConfig] = None) -> List[VisionProvider]:
    """Real SDK-backed providers for every configured API key."""
    cfg = provider_config or config.providers
    providers: List[VisionProvider] = []

    if cfg.openai_api_key:
        from openai import AsyncOpenAI

        providers.append(OpenAIVisionProvider(AsyncOpenAI(api_key=cfg.openai_api_key), provider_config=cfg))
    if cfg.anthropic_api_key:
        from anthropic import AsyncAnthropic

        providers.append(AnthropicVisionProvider(AsyncAnthropic(api_key=cfg.anthropic_api_key), provider_config=cfg))
    if cfg.gemini_api_key:
        from google import genai

        providers.append(GeminiVisionProvider(genai.Client(api_key=cfg.gemini_api_key), provider_config=cfg))

    if not providers:
        logger.warning("No vision provider API keys configured; takeoff will return no items.")
    else:
        logger.info("Vision providers: %s", ", ".join(p.name for p in providers))
    return providers


async def _call_provider(
    provider: VisionProvider,
    images: Sequence[str],
    system_prompt: str,
    user_prompt: str,
    timeout: float,
) -> ProviderResponse:
    t0 = time.time()
    try:
        text = await asyncio.wait_for(
            provider.analyze(images, system_prompt, user_prompt), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.warning("Provider %s timed out after %.0fs", provider.name, timeout)
        return ProviderResponse(provider.name, error=f"timed out after {timeout:.0f}s",
                                elapsed=time.time() - t0)
    except Exception as exc:
        logger.warning("Provider %s failed: %s", provider.name, exc)
        return ProviderResponse(provider.name, error=str(exc) or type(exc).__name__,
                                elapsed=time.time() - t0)

    elapsed = time.time() - t0
    logger.info("Provider %s answered in %.1fs (%d chars)", provider.name, elapsed, len(text or ""))
    return ProviderResponse(provider.name, text=text or "", elapsed=elapsed)


async def analyze_with_all_providers(
    providers: Sequence[VisionProvider],
    images: Sequence[str],
    system_prompt: str,
    user_prompt: str,
    timeout: Optional[float] = None,
) -> Dict[str, ProviderResponse]:
    """
    Query every provider concurrently. Never raises for a provider
    failure; the failure is recorded on that provider's response.
    """
    timeout = timeout or config.providers.timeout_seconds
    responses = await asyncio.gather(*(
        _call_provider(p, images, system_prompt, user_prompt, timeout) for p in providers
    ))
    return {r.provider: r for r in responses}
