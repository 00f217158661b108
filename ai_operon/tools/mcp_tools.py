#!/usr/bin/env python3
"""
Tool Server Executor
mcpClient: route a plan step to a capability of a running tool server
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ai_operon.orchestration.plan import Step, StepResult
from ai_operon.tools.mcp_client import Capability
from ai_operon.tools.tool_registry import Executor, ExecutorContext

logger = logging.getLogger(__name__)

SELECT_PROMPT = """
You are an AI agent that calls tools exposed by external tool servers.
Choose the single best tool for the task and build its arguments from its input schema.

Available tools:
{tools}

Data previous steps have collected:
{input_data}

Respond in the following JSON format:
{{
  "server": "server name",
  "tool": "tool name",
  "arguments": {{}}
}}
"""


def describe_capabilities(capabilities: Dict[str, List[Capability]]) -> str:
    lines = []
    for server_name, tools in capabilities.items():
        for tool in tools:
            schema = json.dumps(tool.input_schema) if tool.input_schema else "{}"
            lines.append(f"- server={server_name} tool={tool.name}: {tool.description} (input schema: {schema})")
    return "\n".join(lines)


def result_text(result: Any) -> Any:
    """Flatten {content: [{type: text, text}]} tool results to text"""
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [item.get("text", "") for item in result["content"] if isinstance(item, dict) and item.get("type") == "text"]
        if texts:
            return "\n".join(texts)
    return result


class McpToolExecutor(Executor):
    """mcpClient: invoke a tool server capability"""

    name = "mcpClient"
    description = "call a tool from a running tool server (see the tool server list)"

    async def _choose(self, step: Step, context: ExecutorContext, capabilities: Dict[str, List[Capability]]) -> Optional[Dict[str, Any]]:
        if step.params.get("server") and step.params.get("tool"):
            return {
                "server": step.params["server"],
                "tool": step.params["tool"],
                "arguments": step.params.get("arguments") or {}
            }

        prompt = SELECT_PROMPT.format(
            tools=describe_capabilities(capabilities), input_data=context.input_data or "none"
        )
        choice = await context.llm.call(prompt, step.instruction)
        if not isinstance(choice, dict) or choice.get("fallback") or not choice.get("tool"):
            return None
        if not choice.get("server"):
            owners = [name for name, tools in capabilities.items() if any(t.name == choice["tool"] for t in tools)]
            if not owners:
                return None
            choice["server"] = owners[0]
        if not isinstance(choice.get("arguments"), dict):
            choice["arguments"] = {}
        return choice

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        client = context.mcp_client
        capabilities = client.all_capabilities() if client is not None else {}
        if not capabilities:
            message = "No tool servers are running"
            logger.warning("mcpClient step skipped: %s", message)
            return self.result(step, {"error": message, "success": False}, error=message)

        try:
            choice = await self._choose(step, context, capabilities)
            if choice is None:
                message = "Could not determine which tool to call"
                return self.result(step, {"error": message, "success": False}, error=message)

            logger.info("Calling %s/%s", choice["server"], choice["tool"])
            result = await client.invoke(choice["server"], choice["tool"], choice["arguments"])
        except Exception as e:
            return self.failure(step, e)

        return self.result(step, {
            "server": choice["server"],
            "tool": choice["tool"],
            "result": result_text(result),
            "success": not (isinstance(result, dict) and result.get("isError"))
        })
