#!/usr/bin/env python3
"""
LLM Provider - Unified abstraction for multiple LLM backends
Supports: OpenAI, OpenRouter and other OpenAI-compatible APIs, Ollama (local)

LLMService is the narrow interface the orchestrator and executors use:
given a system message, a prompt and conversation history it returns either
parsed JSON or free text.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import ollama
from openai import AsyncOpenAI

from ai_operon.monitoring.debug_logger import log_debug

logger = logging.getLogger(__name__)


JSON_INSTRUCTIONS = """
You must respond with valid, parseable JSON only.
- Use escaped newlines (\\n) instead of actual line breaks in strings
- Ensure all quotes are properly escaped
- Do not include markdown formatting, code blocks, or any text outside the JSON
- Verify your response is a single, valid JSON object
Example format: {"key": "value with \\n newline"}

Never respond with an empty message.
"""

NO_PLACEHOLDERS = ". NEVER EVER RESPOND WITH AN EMPTY STRING AND NEVER USE PLACEHOLDERS."


class LLMError(Exception):
    """Raised when the language-model service fails or returns nothing"""


class ProviderType(Enum):
    """Supported LLM provider types"""
    OLLAMA = "ollama"
    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai_compatible"  # OpenRouter, vLLM, LM Studio...


@dataclass
class LLMConfig:
    """Configuration for LLM provider"""
    provider: ProviderType = ProviderType.OPENAI_COMPATIBLE
    model: str = "anthropic/claude-3-sonnet"
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    image_model: str = "dall-e-3"
    timeout: int = 120
    max_tokens: int = 4000
    temperature: float = 0.7
    extra_params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMMessage:
    """Chat message"""
    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class LLMResponse:
    """Response from LLM"""
    content: str
    model: str
    provider: str
    tokens_input: int = 0
    tokens_output: int = 0
    finish_reason: str = "stop"


class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers"""

    def __init__(self, config: LLMConfig):
        self.config = config

    @abstractmethod
    async def chat(
        self,
        messages: List[LLMMessage],
        model: Optional[str] = None,
        json_response: bool = False,
        **kwargs
    ) -> LLMResponse:
        """Send chat request and get response"""

    async def generate_image(self, prompt: str) -> str:
        """Generate an image and return its URL"""
        raise LLMError(f"{type(self).__name__} does not support image generation")

    def _messages_to_dict(self, messages: List[LLMMessage]) -> List[Dict[str, str]]:
        """Convert messages to dict format"""
        return [{"role": m.role, "content": m.content} for m in messages]


class OllamaProvider(BaseLLMProvider):
    """Ollama local LLM provider"""

    def __init__(self, config: LLMConfig):
        super().__init__(config)
        self._client = ollama.AsyncClient(host=config.api_base) if config.api_base else ollama.AsyncClient()

    async def chat(
        self,
        messages: List[LLMMessage],
        model: Optional[str] = None,
        json_response: bool = False,
        **kwargs
    ) -> LLMResponse:
        model = model or self.config.model
        options = {
            "temperature": kwargs.get("temperature", self.config.temperature),
            "num_predict": kwargs.get("max_tokens", self.config.max_tokens),
        }

        response = await self._client.chat(
            model=model,
            messages=self._messages_to_dict(messages),
            options=options,
            format="json" if json_response else None
        )

        return LLMResponse(
            content=response["message"]["content"] or "",
            model=model,
            provider="ollama",
            tokens_input=response.get("prompt_eval_count") or 0,
            tokens_output=response.get("eval_count") or 0
        )


class OpenAIProvider(BaseLLMProvider):
    """OpenAI API provider (also works with compatible APIs such as OpenRouter)"""

    def __init__(self, config: LLMConfig):
        super().__init__(config)
        client_kwargs: Dict[str, Any] = {"api_key": config.api_key, "timeout": config.timeout}
        if config.api_base:
            client_kwargs["base_url"] = config.api_base
        self._client = AsyncOpenAI(**client_kwargs)

    async def chat(
        self,
        messages: List[LLMMessage],
        model: Optional[str] = None,
        json_response: bool = False,
        **kwargs
    ) -> LLMResponse:
        model = model or self.config.model
        request: Dict[str, Any] = {
            "model": model,
            "messages": self._messages_to_dict(messages),
            "temperature": kwargs.get("temperature", self.config.temperature),
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
        }
        if json_response:
            request["response_format"] = {"type": "json_object"}

        response = await self._client.chat.completions.create(**request)

        if not response.choices:
            raise LLMError(f"No choices returned by {model}")

        choice = response.choices[0]
        usage = response.usage

        return LLMResponse(
            content=choice.message.content or "",
            model=model,
            provider=self.config.provider.value,
            tokens_input=usage.prompt_tokens if usage else 0,
            tokens_output=usage.completion_tokens if usage else 0,
            finish_reason=choice.finish_reason or "stop"
        )

    async def generate_image(self, prompt: str) -> str:
        response = await self._client.images.generate(
            model=self.config.image_model,
            prompt=prompt,
            n=1,
            size="1024x1024"
        )
        return response.data[0].url


class LLMProviderFactory:
    """Factory for creating LLM providers"""

    _providers = {
        ProviderType.OLLAMA: OllamaProvider,
        ProviderType.OPENAI: OpenAIProvider,
        ProviderType.OPENAI_COMPATIBLE: OpenAIProvider,
    }

    @classmethod
    def create(cls, config: LLMConfig) -> BaseLLMProvider:
        """Create provider based on config"""
        provider_class = cls._providers.get(config.provider)
        if not provider_class:
            raise ValueError(f"Unknown provider type: {config.provider}")
        return provider_class(config)

    @classmethod
    def create_from_dict(cls, config_dict: Dict[str, Any]) -> BaseLLMProvider:
        """Create provider from the `llm` config section"""
        config = LLMConfig(
            provider=ProviderType(config_dict.get("provider", "openai_compatible")),
            model=config_dict.get("model", "anthropic/claude-3-sonnet"),
            api_key=config_dict.get("api_key"),
            api_base=config_dict.get("api_base"),
            image_model=config_dict.get("image_model", "dall-e-3"),
            timeout=config_dict.get("timeout", 120),
            max_tokens=config_dict.get("max_tokens", 4000),
            temperature=config_dict.get("temperature", 0.7),
            extra_params=config_dict.get("extra_params", {})
        )
        return cls.create(config)


HistoryItem = Union[LLMMessage, Dict[str, Any]]


def _to_message(item: HistoryItem) -> LLMMessage:
    if isinstance(item, LLMMessage):
        return item
    content = item.get("content", "")
    if not isinstance(content, str):
        content = json.dumps(content)
    return LLMMessage(role=item.get("role", "user"), content=content)


def _escape_newlines_in_strings(text: str) -> str:
    """Replace raw line breaks inside JSON string literals with \\n"""
    result = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if char == "\\":
                escaped = not escaped
            elif char == '"' and not escaped:
                in_string = False
            elif char in "\r\n" and not escaped:
                result.append("\\n")
                continue
            else:
                escaped = False
        elif char == '"':
            in_string = True
            escaped = False
        result.append(char)
    return "".join(result)


def parse_json(raw: Optional[str]) -> Any:
    """
    Parse a model response as JSON, repairing common formatting mistakes.

    Never raises: unparseable content comes back as a dict with
    ``fallback: True`` and the raw text under ``rawContent``.
    """
    if not raw or not isinstance(raw, str):
        return {"error": "Invalid input - not a string", "fallback": True}

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    cleaned = raw
    if "```" in cleaned:
        match = re.search(r"```(?:json)?([\s\S]*?)```", cleaned)
        if match and match.group(1).strip():
            cleaned = match.group(1).strip()

    cleaned = _escape_newlines_in_strings(cleaned)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse JSON response: %s", e)
        logger.debug("Unparseable content: %s", raw[:500])
        return {
            "error": "Failed to parse as JSON",
            "errorMessage": str(e),
            "rawContent": raw,
            "fallback": True
        }


class LLMService:
    """
    Opaque language-model service used by the orchestrator and executors.
    """

    def __init__(self, provider: BaseLLMProvider, planning_model: Optional[str] = None):
        self.provider = provider
        self.planning_model = planning_model

    @classmethod
    def from_config(cls, llm_section: Dict[str, Any]) -> 'LLMService':
        provider = LLMProviderFactory.create_from_dict(llm_section)
        return cls(provider, planning_model=llm_section.get("planning_model"))

    async def call(
        self,
        system_message: str,
        prompt: str,
        history: Optional[Sequence[HistoryItem]] = None,
        json_response: bool = True,
        model: Optional[str] = None
    ) -> Any:
        """
        Call the model.

        Args:
            system_message: System instructions
            prompt: User prompt
            history: Prior conversation turns
            json_response: Ask for and parse a JSON object
            model: Model override

        Returns:
            Parsed JSON (dict) when json_response, otherwise text

        Raises:
            LLMError: on provider failure or empty response
        """
        if json_response:
            system_message = system_message + JSON_INSTRUCTIONS
        system_message = system_message + NO_PLACEHOLDERS

        messages = [LLMMessage(role="system", content=system_message)]
        for item in history or []:
            message = _to_message(item)
            if message.content:
                messages.append(message)
        if prompt:
            messages.append(LLMMessage(role="user", content=prompt))

        log_debug("llm_request", [{"role": m.role, "content": m.content} for m in messages])
        try:
            response = await self.provider.chat(messages, model=model, json_response=json_response)
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(f"LLM call failed: {e}") from e

        log_debug("llm_response", response.content)
        if not response.content:
            raise LLMError(f"Empty response from {response.model}")

        if json_response:
            return parse_json(response.content)
        return response.content

    async def generate_image(self, prompt: str) -> str:
        try:
            return await self.provider.generate_image(prompt)
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(f"Image generation failed: {e}") from e
