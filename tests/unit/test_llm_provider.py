"""
Tests for the LLM service: JSON repair, message assembly and error handling
"""

import json
from typing import List, Optional

import pytest

from ai_operon.core.config import config
from ai_operon.core.llm_provider import (
    BaseLLMProvider,
    LLMConfig,
    LLMError,
    LLMProviderFactory,
    LLMResponse,
    LLMService,
    OllamaProvider,
    OpenAIProvider,
    parse_json,
)


class RecordingProvider(BaseLLMProvider):
    """Returns canned content and remembers what it was sent"""

    def __init__(self, content="", error: Optional[Exception] = None):
        super().__init__(LLMConfig(model="fake-model"))
        self.content = content
        self.error = error
        self.requests: List[dict] = []

    async def chat(self, messages, model=None, json_response=False, **kwargs):
        self.requests.append({"messages": messages, "model": model, "json_response": json_response})
        if self.error:
            raise self.error
        return LLMResponse(content=self.content, model=model or "fake-model", provider="fake")


class TestParseJson:

    def test_plain_json(self):
        assert parse_json('{"a": 1}') == {"a": 1}

    def test_markdown_fence(self):
        assert parse_json('Here you go:\n```json\n{"steps": []}\n```') == {"steps": []}

    def test_raw_newlines_inside_strings(self):
        assert parse_json('{"code": "print(1)\nprint(2)"}') == {"code": "print(1)\nprint(2)"}

    def test_garbage_falls_back(self):
        result = parse_json("definitely not json")
        assert result["fallback"] is True
        assert result["rawContent"] == "definitely not json"

    @pytest.mark.parametrize("raw", [None, "", 42])
    def test_invalid_input(self, raw):
        assert parse_json(raw)["fallback"] is True


class TestLLMService:

    @pytest.mark.asyncio
    async def test_json_call_assembles_messages(self):
        provider = RecordingProvider('{"ok": true}')
        service = LLMService(provider, planning_model="planner")

        result = await service.call(
            "You plan.", "Do it",
            history=[{"role": "assistant", "content": {"previous": 1}}, {"role": "user", "content": ""}],
            model="planner"
        )

        assert result == {"ok": True}
        request = provider.requests[0]
        assert request["model"] == "planner"
        assert request["json_response"] is True
        roles = [m.role for m in request["messages"]]
        assert roles == ["system", "assistant", "user"]
        assert "valid, parseable JSON" in request["messages"][0].content
        assert request["messages"][1].content == '{"previous": 1}'
        assert request["messages"][2].content == "Do it"

    @pytest.mark.asyncio
    async def test_text_call_and_empty_prompt(self):
        provider = RecordingProvider("plain answer")
        service = LLMService(provider)

        result = await service.call("System", "", json_response=False)

        assert result == "plain answer"
        messages = provider.requests[0]["messages"]
        assert [m.role for m in messages] == ["system"]
        assert "valid, parseable JSON" not in messages[0].content

    @pytest.mark.asyncio
    async def test_provider_failure_becomes_llm_error(self):
        service = LLMService(RecordingProvider(error=RuntimeError("rate limited")))
        with pytest.raises(LLMError, match="rate limited"):
            await service.call("System", "prompt")

    @pytest.mark.asyncio
    async def test_empty_response_is_an_error(self):
        service = LLMService(RecordingProvider(""))
        with pytest.raises(LLMError, match="Empty response"):
            await service.call("System", "prompt")

    @pytest.mark.asyncio
    async def test_image_generation_unsupported(self):
        service = LLMService(RecordingProvider("x"))
        with pytest.raises(LLMError):
            await service.generate_image("a cat")

    @pytest.mark.asyncio
    async def test_interactions_dumped_when_enabled(self, tmp_path):
        config.set("logging.file", str(tmp_path / "logs" / "operon.log"))
        config.set("logging.debug_dump", True)
        service = LLMService(RecordingProvider("plain answer"))

        await service.call("System", "Question", json_response=False)

        lines = (tmp_path / "logs" / "debug_interactions.jsonl").read_text().splitlines()
        entries = [json.loads(line) for line in lines]
        assert [e["source"] for e in entries] == ["llm_request", "llm_response"]
        assert entries[0]["content"][1] == {"role": "user", "content": "Question"}
        assert entries[1]["content"] == "plain answer"

    @pytest.mark.asyncio
    async def test_nothing_dumped_by_default(self, tmp_path):
        config.set("logging.file", str(tmp_path / "logs" / "operon.log"))
        await LLMService(RecordingProvider("x")).call("System", "Question", json_response=False)
        assert not (tmp_path / "logs").exists()


class TestFactory:

    def test_ollama_from_dict(self):
        provider = LLMProviderFactory.create_from_dict({"provider": "ollama", "model": "llama3"})
        assert isinstance(provider, OllamaProvider)
        assert provider.config.model == "llama3"

    def test_openai_compatible_from_config_section(self):
        service = LLMService.from_config({
            "provider": "openai_compatible",
            "api_key": "test-key",
            "api_base": "https://openrouter.ai/api/v1",
            "model": "some/model",
            "planning_model": "some/planner",
        })
        assert isinstance(service.provider, OpenAIProvider)
        assert service.planning_model == "some/planner"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMProviderFactory.create_from_dict({"provider": "carrier-pigeon"})
