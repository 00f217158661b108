"""
Core module - Configuration and LLM service
"""

from .config import Config, config, get_config
from .llm_provider import (
    BaseLLMProvider,
    LLMConfig,
    LLMError,
    LLMMessage,
    LLMProviderFactory,
    LLMResponse,
    LLMService,
    OllamaProvider,
    OpenAIProvider,
    ProviderType,
    parse_json,
)

__all__ = [
    'Config',
    'config',
    'get_config',
    'BaseLLMProvider',
    'LLMConfig',
    'LLMError',
    'LLMMessage',
    'LLMProviderFactory',
    'LLMResponse',
    'LLMService',
    'OllamaProvider',
    'OpenAIProvider',
    'ProviderType',
    'parse_json',
]
