#!/usr/bin/env python3
"""
Generation Tools
chatCompletion, writer and imageGeneration executors - model calls only, no sandbox
"""

import asyncio
import logging
import os
import re
import secrets
import time
from typing import Optional

import requests

from ai_operon.core.config import config
from ai_operon.orchestration.plan import Artifact, Step, StepResult
from ai_operon.tools.tool_registry import Executor, ExecutorContext

logger = logging.getLogger(__name__)


class ChatCompletionExecutor(Executor):
    """Ask the model directly; used for analysis and self-evaluation"""

    name = "chatCompletion"
    description = "ask normal AI questions, analyze and evaluate intermediate results"

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        try:
            answer = await context.llm.call(step.step, context.input_data or step.step, json_response=False)
        except Exception as e:
            return self.failure(step, e)
        return self.result(step, answer)


WRITER_PROMPT = """
You are an AI writer that can write about a given topic based on the information provided.
Write complete, well-structured prose in markdown. Do not summarize the instructions back.

Information: {information}
"""


class WriterExecutor(Executor):
    """Long-form writing grounded on earlier step results"""

    name = "writer"
    description = "write about things in detail based on the information collected previously"

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        prompt = WRITER_PROMPT.format(information=context.input_data or "none")
        question = f"{context.task_text}\n\nWriting instruction: {step.instruction}"
        try:
            text = await context.llm.call(prompt, question, json_response=False)
        except Exception as e:
            return self.failure(step, e)
        return self.result(step, text)


class ImageGenerationExecutor(Executor):
    """Generate an image and keep a copy on the host"""

    name = "imageGeneration"
    description = "generate an image from a description"

    def __init__(self, output_dir: Optional[str] = None, timeout: Optional[int] = None):
        self.output_dir = output_dir or config.get("tools.output_dir", "./.runtime/output")
        self.timeout = timeout or config.get("tools.http_timeout_sec", 15)

    def _download(self, url: str, path: str) -> str:
        response = requests.get(url, stream=True, timeout=self.timeout)
        response.raise_for_status()
        with open(path, "wb") as f:
            for chunk in response.iter_content(chunk_size=8192):
                f.write(chunk)
        return path

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        prompt = step.step if not context.input_data else f"{step.step}\n\n{context.input_data}"
        try:
            image_url = await context.llm.generate_image(prompt)
        except Exception as e:
            return self.failure(step, e)

        safe_user = re.sub(r"[^a-zA-Z0-9_-]", "_", context.user_id)
        images_dir = os.path.join(self.output_dir, safe_user, "images")
        os.makedirs(images_dir, exist_ok=True)
        path = os.path.join(images_dir, f"image_{int(time.time() * 1000)}_{secrets.token_hex(4)}.png")

        try:
            await asyncio.to_thread(self._download, image_url, path)
        except requests.RequestException as e:
            logger.warning("Could not download generated image: %s", e)
            if os.path.exists(path):
                os.unlink(path)
            return self.result(step, {"success": True, "imageUrl": image_url, "filePath": None})

        return self.result(
            step,
            {"success": True, "imageUrl": image_url, "filePath": path},
            artifacts=[Artifact(path=path, location="host")]
        )
