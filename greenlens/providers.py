"""
Inference provider clients.

The pipeline talks to "an inference capability" through LLMClient: a system
instruction plus a text or image payload in, free-form text out. Two
interchangeable providers are wired into a ProviderChain which falls back
from the primary to the secondary once per request.
"""

import asyncio
import base64
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Type, TypeVar

import anthropic
from mistralai import Mistral

from .config import MAX_OUTPUT_TOKENS, TEMPERATURE, Settings
from .errors import ConfigurationError, GreenLensError, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# REQUEST / RESPONSE
# =============================================================================

@dataclass
class InferenceRequest:
    """A single request to an inference provider."""
    system: str
    prompt: str
    image: Optional[bytes] = None
    media_type: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.image is not None


_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")
_ARRAY = re.compile(r"\[[\s\S]*\]")


def parse_json_array(text: str) -> List[Any]:
    """
    Parse a JSON array out of a model response.

    Tolerates a surrounding markdown code fence and leading or trailing prose
    by taking the outermost bracketed substring.

    Raises:
        ValueError: no JSON array could be recovered.
    """
    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", text.strip()))
    match = _ARRAY.search(cleaned)
    data = json.loads(match.group(0) if match else cleaned)
    if not isinstance(data, list):
        raise ValueError("Response is not a JSON array")
    return data


# =============================================================================
# LLM CLIENTS
# =============================================================================

class LLMClient(ABC):
    """Abstract base class for inference providers."""

    name = "provider"

    @abstractmethod
    async def complete(self, request: InferenceRequest) -> str:
        """Return the provider's text response, raising ProviderError on failure."""
        pass


class AnthropicClient(LLMClient):
    """Anthropic Claude client (text and vision)."""

    name = "Claude"

    def __init__(self, api_key: str, model: str = "claude-3-5-haiku-20241022", timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        """Lazily initialize the Anthropic client."""
        if self._client is None:
            self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def _content(self, request: InferenceRequest):
        if not request.is_image:
            return request.prompt
        return [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": request.media_type or "image/jpeg",
                    "data": base64.b64encode(request.image).decode("utf-8"),
                },
            },
            {"type": "text", "text": request.prompt},
        ]

    async def complete(self, request: InferenceRequest) -> str:
        client = self._get_client()
        try:
            response = await asyncio.to_thread(
                client.messages.create,
                model=self.model,
                max_tokens=MAX_OUTPUT_TOKENS,
                temperature=TEMPERATURE,
                system=request.system,
                messages=[{"role": "user", "content": self._content(request)}],
            )
        except Exception as e:
            raise ProviderError(self.name, str(e), getattr(e, "status_code", None)) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        ).strip()
        if not text:
            raise ProviderError(self.name, "empty response")
        return text


class MistralClient(LLMClient):
    """Mistral AI client; image requests go to the Pixtral vision model."""

    name = "Mistral"

    def __init__(
        self,
        api_key: str,
        model: str = "mistral-large-latest",
        vision_model: str = "pixtral-large-latest",
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.model = model
        self.vision_model = vision_model
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        """Lazily initialize the Mistral client."""
        if self._client is None:
            self._client = Mistral(api_key=self.api_key, timeout_ms=int(self.timeout * 1000))
        return self._client

    def _user_content(self, request: InferenceRequest):
        if not request.is_image:
            return request.prompt
        encoded = base64.b64encode(request.image).decode("utf-8")
        image_url = f"data:{request.media_type or 'image/jpeg'};base64,{encoded}"
        return [
            {"type": "text", "text": request.prompt},
            {"type": "image_url", "image_url": {"url": image_url}},
        ]

    async def complete(self, request: InferenceRequest) -> str:
        client = self._get_client()
        model = self.vision_model if request.is_image else self.model
        if request.is_image:
            logger.info(f"Extracting from image using {model}, size={len(request.image)} bytes")

        try:
            response = await asyncio.to_thread(
                client.chat.complete,
                model=model,
                messages=[
                    {"role": "system", "content": request.system},
                    {"role": "user", "content": self._user_content(request)},
                ],
                temperature=TEMPERATURE,
                max_tokens=MAX_OUTPUT_TOKENS,
            )
        except Exception as e:
            raise ProviderError(self.name, str(e), getattr(e, "status_code", None)) from e

        if not response or not response.choices:
            raise ProviderError(self.name, "unexpected response format")
        content = response.choices[0].message.content
        if isinstance(content, list):
            content = "".join(getattr(chunk, "text", "") or "" for chunk in content)
        if not content:
            raise ProviderError(self.name, "empty response")
        return content


# =============================================================================
# FAILOVER
# =============================================================================

class ProviderChain:
    """Primary provider with a single fallback to a secondary."""

    def __init__(self, primary: Optional[LLMClient] = None, secondary: Optional[LLMClient] = None):
        if primary is None and secondary is not None:
            primary, secondary = secondary, None
        self.primary = primary
        self.secondary = secondary

    @property
    def configured(self) -> bool:
        return self.primary is not None

    async def run(
        self,
        request: InferenceRequest,
        parse: Callable[[str], T],
        error_cls: Type[GreenLensError],
    ) -> T:
        """
        Send the request and parse the response, failing over once.

        Any exception from the call or from ``parse`` counts as a provider
        failure. The last failure is raised as ``error_cls``.
        """
        if self.primary is None:
            raise ConfigurationError("No inference provider is configured.")

        try:
            return parse(await self.primary.complete(request))
        except Exception as primary_error:
            if self.secondary is None:
                raise _wrap(primary_error, error_cls) from primary_error
            logger.warning(
                f"{self.primary.name} request failed, trying {self.secondary.name} fallback: {primary_error}"
            )

        try:
            return parse(await self.secondary.complete(request))
        except Exception as secondary_error:
            raise _wrap(secondary_error, error_cls) from secondary_error


def _wrap(error: Exception, error_cls: Type[GreenLensError]) -> GreenLensError:
    if isinstance(error, error_cls):
        return error
    return error_cls(str(error))


def build_provider_chain(settings: Settings) -> ProviderChain:
    """Order the configured providers, preferred one first."""
    clients = {}
    if settings.anthropic_api_key:
        clients["anthropic"] = AnthropicClient(
            settings.anthropic_api_key,
            model=settings.anthropic_model,
            timeout=settings.inference_timeout_seconds,
        )
    if settings.mistral_api_key:
        clients["mistral"] = MistralClient(
            settings.mistral_api_key,
            model=settings.mistral_model,
            vision_model=settings.mistral_vision_model,
            timeout=settings.inference_timeout_seconds,
        )

    order = ["anthropic", "mistral"]
    if settings.primary_provider == "mistral":
        order.reverse()
    ordered = [clients[name] for name in order if name in clients]

    if not ordered:
        logger.warning("No inference provider configured. Using rule-based categorization only.")
        return ProviderChain()
    return ProviderChain(*ordered)
