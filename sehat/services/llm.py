import json
import logging
import re
from typing import TypeVar

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from sehat.config import ANTHROPIC_API_KEY, LLM_MODEL, LLM_PROVIDER, OPENAI_API_KEY

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# Triage needs a short structured answer, so the small models are the default.
DEFAULT_MODELS = {
    "anthropic": "claude-3-haiku-20240307",
    "openai": "gpt-4o-mini",
}

_LIST_FIELDS = ("symptoms", "recommended_actions")


def _strip_json(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        return text[start:end + 1]
    return text


def _coerce_payload(data: object) -> object:
    # Models sometimes return "a, b" where a list is expected.
    if not isinstance(data, dict):
        return data
    return {
        key: [part.strip() for part in value.split(",") if part.strip()]
        if key in _LIST_FIELDS and isinstance(value, str) else value
        for key, value in data.items()
    }


def _detect_provider() -> str:
    provider = (LLM_PROVIDER or "auto").lower()
    if provider != "auto":
        return provider
    if ANTHROPIC_API_KEY:
        return "anthropic"
    if OPENAI_API_KEY:
        return "openai"
    return "dummy"


class LLMClient:
    """Structured-output calls to whichever provider has a key configured."""

    def __init__(self) -> None:
        self.provider = _detect_provider()
        self._anthropic = AsyncAnthropic(api_key=ANTHROPIC_API_KEY) if ANTHROPIC_API_KEY else None
        self._openai = AsyncOpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None

    def available(self) -> bool:
        client = {"anthropic": self._anthropic, "openai": self._openai}.get(self.provider)
        return client is not None

    @property
    def model(self) -> str:
        return LLM_MODEL or DEFAULT_MODELS.get(self.provider, "")

    async def generate_json(
        self,
        *,
        system: str,
        user: str,
        response_model: type[T],
        max_tokens: int = 1024,
    ) -> T:
        if not self.available():
            raise RuntimeError("LLM provider unavailable")
        if self.provider == "anthropic":
            return await self._anthropic_json(system, user, response_model, max_tokens)
        return await self._openai_json(system, user, response_model)

    async def _anthropic_json(self, system: str, user: str, response_model: type[T], max_tokens: int) -> T:
        message = await self._anthropic.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        raw = _strip_json("".join(block.text for block in message.content if hasattr(block, "text")))
        try:
            return response_model.model_validate_json(raw)
        except ValidationError:
            logger.debug("Coercing loosely typed %s payload", response_model.__name__)
            return response_model.model_validate(_coerce_payload(json.loads(raw)))

    async def _openai_json(self, system: str, user: str, response_model: type[T]) -> T:
        response = await self._openai.beta.chat.completions.parse(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            response_format=response_model,
        )
        parsed = response.choices[0].message.parsed
        if parsed is None:
            raise RuntimeError("LLM parse returned no data")
        return parsed


_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    global _client
    if _client is None:
        _client = LLMClient()
    return _client
