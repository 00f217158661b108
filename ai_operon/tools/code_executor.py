#!/usr/bin/env python3
"""
Code Executor
Generate Python or shell code with the model, run it in the task sandbox and
let the model evaluate the output.
"""

import logging
import re
import shlex
import uuid
from typing import Any, Dict, List, Optional

from ai_operon.core.config import config
from ai_operon.orchestration.plan import Artifact, Step, StepResult
from ai_operon.sandbox.docker_executor import ExecResult
from ai_operon.tools.tool_registry import Executor, ExecutorContext

logger = logging.getLogger(__name__)

MAX_RAW_OUTPUT = 1000

CODE_PROMPT = """
Based on the following task, generate python code which completes it in a simple way.
Because the output is evaluated afterwards, print important information to the console.

The code runs inside a Linux container with Python installed. Only read and write files
inside {workdir}.

Respond in the following JSON format:
{{
  "code": "CODE HERE",
  "pip install": "space separated libraries which are required, if any"
}}
"""

BASH_PROMPT = """
You are an AI agent that generates bash code to complete a task.

Your code will be executed in a Linux container with Python installed, working directory {workdir}.
If your code creates any files, echo their absolute paths on separate lines, each prefixed with
'CREATED_FILE:' (e.g. echo "CREATED_FILE:{workdir}/result.txt").

Respond in the following JSON format:
{{
  "code": "bash code in one line"
}}
"""

EVALUATION_PROMPT = """
Based on the following task, evaluate the output of the code and return a summary of the output.
Task: {task}
Output: {output}

Respond in the following JSON format:
{{
  "summary": "SUMMARY HERE",
  "success": true
}}
"""


def extract_code_blocks(text: str) -> List[Dict[str, str]]:
    """
    Extract code blocks from markdown-formatted text

    Returns:
        List of {"language": str, "code": str}
    """
    blocks = []
    for lang, code in re.findall(r'```(\w*)\n(.*?)```', text or "", re.DOTALL):
        code = code.strip()
        if code:
            blocks.append({"language": lang.lower() if lang else "text", "code": code})
    return blocks


def extract_code(response: Any, language: str = "python") -> Optional[str]:
    """Code from a model response, falling back to fenced blocks in raw text"""
    if isinstance(response, dict):
        if isinstance(response.get("code"), str) and response["code"].strip():
            return response["code"]
        raw = response.get("rawContent", "")
    else:
        raw = str(response or "")

    blocks = extract_code_blocks(raw)
    for block in blocks:
        if block["language"] in (language, "py" if language == "python" else "sh", "text"):
            return block["code"]
    return blocks[0]["code"] if blocks else None


def combine_output(result: ExecResult) -> str:
    output = result.stdout
    if result.stderr:
        output = f"{output}\nSTDERR: {result.stderr}" if output else f"STDERR: {result.stderr}"
    if not result.ok:
        output = f"{output}\nExit code: {result.exit_code}"
    return output


def _pip_packages(spec: Any) -> List[str]:
    if isinstance(spec, list):
        names = [str(item) for item in spec]
    else:
        names = re.split(r"[,\s]+", str(spec or ""))
    return [n for n in names if n and n.lower() not in ("none", "n/a", "pip", "install")]


async def evaluate_output(context: ExecutorContext, task: str, output: str) -> Dict[str, Any]:
    """Ask the model whether the output fulfils the task"""
    prompt = EVALUATION_PROMPT.format(task=task, output=output)
    try:
        summary = await context.llm.call(prompt, task)
    except Exception as e:
        logger.warning("Output evaluation failed: %s", e)
        return {"summary": f"Error evaluating output: {e}", "success": False, "rawOutput": output[:MAX_RAW_OUTPUT]}

    if not isinstance(summary, dict) or summary.get("fallback"):
        summary = {"summary": "Failed to generate summary", "success": False}
    summary["rawOutput"] = output[:MAX_RAW_OUTPUT]
    return summary


class PythonExecuteExecutor(Executor):
    """execute: create and run a Python script in the sandbox"""

    name = "execute"
    description = "create and execute python files"
    requires_sandbox = True

    def __init__(self, workdir: Optional[str] = None):
        self.workdir = workdir or config.get("sandbox.workdir", "/app")

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        task = f"{step.instruction}\n\nOther AI Data: {context.input_data}"
        try:
            sandbox_id = await context.sandbox()
            manager = context.sandbox_manager

            response = await context.llm.call(CODE_PROMPT.format(workdir=self.workdir), task)
            code = extract_code(response, "python")
            if not code:
                return self.result(step, {"error": "Failed to generate Python code", "success": False},
                                   error="Failed to generate Python code")

            script_path = f"{self.workdir}/scripts/{uuid.uuid4().hex}.py"
            await manager.write_file(sandbox_id, script_path, code)

            dependencies = "none"
            packages = _pip_packages(response.get("pip install") if isinstance(response, dict) else None)
            if packages:
                install = await manager.exec(
                    sandbox_id, "pip install --quiet " + " ".join(shlex.quote(p) for p in packages)
                )
                dependencies = "installed" if install.ok else f"install failed: {install.stderr.strip()[:300]}"
                logger.info("pip install %s: %s", " ".join(packages), dependencies)

            run = await manager.execute_python(sandbox_id, script_path)
        except Exception as e:
            return self.failure(step, e)

        output = combine_output(run)
        summary = await evaluate_output(context, task, output)
        summary["dependencies"] = dependencies
        return self.result(
            step,
            summary,
            error=None if run.ok else f"Python execution failed with exit code {run.exit_code}",
            artifacts=[Artifact(path=script_path, content=code)]
        )


class BashExecutor(Executor):
    """bash: generate and run a shell command in the sandbox"""

    name = "bash"
    description = "execute bash commands"
    requires_sandbox = True

    def __init__(self, workdir: Optional[str] = None):
        self.workdir = workdir or config.get("sandbox.workdir", "/app")

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        task = f"{step.instruction}\n\nOther AI Data: {context.input_data}"
        try:
            sandbox_id = await context.sandbox()
            command = step.params.get("command")
            if not command:
                response = await context.llm.call(BASH_PROMPT.format(workdir=self.workdir), task)
                command = extract_code(response, "bash")
            if not command:
                return self.result(step, {"error": "Failed to generate bash code", "success": False},
                                   error="Failed to generate bash code")

            run = await context.sandbox_manager.exec(sandbox_id, command)
        except Exception as e:
            return self.failure(step, e)

        output = combine_output(run)
        created = [
            line[len("CREATED_FILE:"):].strip()
            for line in run.stdout.splitlines()
            if line.startswith("CREATED_FILE:") and line[len("CREATED_FILE:"):].strip()
        ]
        summary = await evaluate_output(context, task, output)
        summary["command"] = command
        if created:
            summary["createdContainerFiles"] = created
        return self.result(
            step,
            summary,
            error=None if run.ok else f"Command exited with code {run.exit_code}",
            artifacts=[Artifact(path=path) for path in created]
        )
