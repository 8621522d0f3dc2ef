import json
import logging
import re
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from app.config import (
    ANTHROPIC_API_KEY,
    LLM_DEFAULT_TIER,
    LLM_MODEL_FAST,
    LLM_MODEL_HIGH,
    LLM_MODEL_STANDARD,
    LLM_PROVIDER,
    LLM_TIMEOUT_SECONDS,
    LLM_VISION_MODEL,
    OPENAI_API_KEY,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


_ANTHROPIC_DEFAULTS = {
    "fast": "claude-3-5-haiku-latest",
    "standard": "claude-sonnet-4-5",
    "high": "claude-sonnet-4-5",
}

_OPENAI_DEFAULTS = {
    "fast": "gpt-4o-mini",
    "standard": "gpt-4o",
    "high": "gpt-4o",
}


class LLMUnavailableError(RuntimeError):
    """No LLM provider is configured."""


class LLMResponseError(RuntimeError):
    """The model refused, returned nothing, or returned output that does not validate."""


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T
    ok: bool = True


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    raw: str = ""
    ok: bool = False


def _strip_json(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        return text[start:end + 1]
    return text


def parse_structured(raw: str, response_model: type[T]) -> Parsed[T] | ParseFailure:
    """Validate raw model output against ``response_model``.

    Returns ``Parsed`` on success and ``ParseFailure`` with a reason otherwise;
    never raises.
    """
    if not raw or not raw.strip():
        return ParseFailure(reason="empty response", raw=raw or "")
    candidate = _strip_json(raw)
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return ParseFailure(reason=f"invalid JSON: {exc.msg}", raw=raw)
    if not isinstance(payload, dict):
        return ParseFailure(reason="expected a JSON object", raw=raw)
    try:
        return Parsed(response_model.model_validate(payload))
    except ValidationError as exc:
        return ParseFailure(reason=f"schema mismatch: {exc.error_count()} error(s)", raw=raw)


class ReasoningService(Protocol):
    async def generate_json(
        self,
        *,
        system: str,
        user: str,
        response_model: type[T],
        max_tokens: int = 2048,
        tier: str | None = None,
    ) -> T: ...

    async def generate_text(
        self,
        *,
        system: str,
        user: str,
        max_tokens: int = 1024,
        tier: str | None = None,
    ) -> str: ...


class VisionService(Protocol):
    async def analyze_image_json(
        self,
        *,
        system: str,
        user: str,
        response_model: type[T],
        image_url: str | None = None,
        max_tokens: int = 2000,
    ) -> T: ...


class LLMClient:
    """Anthropic/OpenAI client implementing both reasoning and vision calls.

    Constructed once at start-up and handed to each agent; agents never build
    their own client.
    """

    def __init__(
        self,
        provider: str | None = None,
        anthropic_api_key: str | None = None,
        openai_api_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        anthropic_api_key = ANTHROPIC_API_KEY if anthropic_api_key is None else anthropic_api_key
        openai_api_key = OPENAI_API_KEY if openai_api_key is None else openai_api_key
        timeout = LLM_TIMEOUT_SECONDS if timeout is None else timeout

        provider = (provider or LLM_PROVIDER or "auto").lower()
        if provider == "auto":
            if anthropic_api_key:
                provider = "anthropic"
            elif openai_api_key:
                provider = "openai"
            else:
                provider = "none"
        self.provider = provider

        self._anthropic = (
            AsyncAnthropic(api_key=anthropic_api_key, timeout=timeout) if anthropic_api_key else None
        )
        self._openai = AsyncOpenAI(api_key=openai_api_key, timeout=timeout) if openai_api_key else None

    def available(self) -> bool:
        if self.provider == "anthropic":
            return self._anthropic is not None
        if self.provider == "openai":
            return self._openai is not None
        return False

    def model_for_tier(self, tier: str | None) -> str:
        tier = (tier or LLM_DEFAULT_TIER or "standard").lower()
        if tier not in ("fast", "standard", "high"):
            tier = "standard"

        if tier == "fast" and LLM_MODEL_FAST:
            return LLM_MODEL_FAST
        if tier == "standard" and LLM_MODEL_STANDARD:
            return LLM_MODEL_STANDARD
        if tier == "high" and LLM_MODEL_HIGH:
            return LLM_MODEL_HIGH

        if self.provider == "anthropic":
            return _ANTHROPIC_DEFAULTS[tier]
        return _OPENAI_DEFAULTS[tier]

    def vision_model(self) -> str:
        return LLM_VISION_MODEL or self.model_for_tier("high")

    def _require_available(self) -> None:
        if not self.available():
            raise LLMUnavailableError("LLM provider unavailable")

    async def _complete(
        self,
        *,
        system: str,
        content: str | list,
        model: str,
        max_tokens: int,
        json_mode: bool,
    ) -> str:
        if self.provider == "anthropic":
            message = await self._anthropic.messages.create(
                model=model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": content}],
            )
            if getattr(message, "stop_reason", None) == "refusal":
                raise LLMResponseError("Model refusal")
            raw = ""
            for block in message.content:
                if hasattr(block, "text"):
                    raw += block.text
            return raw

        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._openai.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": content},
            ],
            max_completion_tokens=max_tokens,
            **kwargs,
        )
        choice = response.choices[0]
        refusal = getattr(choice.message, "refusal", None)
        if refusal:
            raise LLMResponseError(f"Model refusal: {refusal}")
        return choice.message.content or ""

    def _validate(self, raw: str, response_model: type[T]) -> T:
        result = parse_structured(raw, response_model)
        if isinstance(result, ParseFailure):
            logger.debug("Unparseable %s response: %s", response_model.__name__, result.raw[:500])
            raise LLMResponseError(f"{response_model.__name__}: {result.reason}")
        return result.value

    async def generate_json(
        self,
        *,
        system: str,
        user: str,
        response_model: type[T],
        max_tokens: int = 2048,
        tier: str | None = None,
    ) -> T:
        self._require_available()
        raw = await self._complete(
            system=system,
            content=user,
            model=self.model_for_tier(tier),
            max_tokens=max_tokens,
            json_mode=True,
        )
        return self._validate(raw, response_model)

    async def generate_text(
        self,
        *,
        system: str,
        user: str,
        max_tokens: int = 1024,
        tier: str | None = None,
    ) -> str:
        self._require_available()
        raw = await self._complete(
            system=system,
            content=user,
            model=self.model_for_tier(tier),
            max_tokens=max_tokens,
            json_mode=False,
        )
        text = raw.strip()
        if not text:
            raise LLMResponseError("Empty response content from model")
        return text

    async def analyze_image_json(
        self,
        *,
        system: str,
        user: str,
        response_model: type[T],
        image_url: str | None = None,
        max_tokens: int = 2000,
    ) -> T:
        self._require_available()
        if image_url is None:
            content: str | list = user
        elif self.provider == "anthropic":
            content = [
                {"type": "image", "source": {"type": "url", "url": image_url}},
                {"type": "text", "text": user},
            ]
        else:
            content = [
                {"type": "text", "text": user},
                {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
            ]
        raw = await self._complete(
            system=system,
            content=content,
            model=self.vision_model(),
            max_tokens=max_tokens,
            json_mode=True,
        )
        return self._validate(raw, response_model)
