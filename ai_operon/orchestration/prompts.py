#!/usr/bin/env python3
"""
Orchestration Prompts
System prompts for planning, step reasoning, reflection, progress checks and
final synthesis.
"""

import json
from typing import Any, Dict, List, Optional

from ai_operon.orchestration.plan import (
    NO_CHANGES_NEEDED,
    ExecutionTrace,
    Plan,
    ReasoningEntry,
    Step,
    StepResult,
    render_output,
)

PLAN_FORMAT = """
### Output Format (JSON):

For tasks that need tools, return a JSON object structured like this:
{
  "step1": {
    "step": "Brief explanation of what the step does",
    "action": "Tool to use (one of the tools listed above)",
    "expectedOutput": "What will be produced",
    "usingData": "Comma-separated tools whose results this step needs, 'all' or 'none'",
    "validations": "How you will validate the output for correctness",
    "intensity": "Optional: for deepResearch, a number 1-10 controlling search depth"
  },
  "step2": {
    ...
  }
}

For simple questions or chit-chat, return:
{
  "directAnswer": true,
  "answer": "Your complete answer to the question"
}

Example for "Research the history of the internet and write a paper":
{
  "step1": {
    "step": "Use deepResearch to collect sources on the history of the internet",
    "action": "deepResearch",
    "expectedOutput": "Detailed research content",
    "usingData": "none",
    "validations": "Verify timeframe coverage",
    "intensity": 5
  },
  "step2": {
    "step": "Write a structured research paper based on the gathered material",
    "action": "writer",
    "expectedOutput": "research paper",
    "usingData": "deepResearch",
    "validations": "Review for factual accuracy and completeness"
  },
  "step3": {
    "step": "Save the research paper to research_paper.md",
    "action": "fileSystem",
    "expectedOutput": "research_paper.md",
    "usingData": "writer",
    "validations": "Verify file is written with full content"
  }
}
"""


def format_mcp_tools(capabilities: Optional[Dict[str, List[Any]]]) -> str:
    if not capabilities:
        return ""
    lines = ["", "Tools available through running tool servers (use the mcpClient tool):"]
    for server_name, tools in capabilities.items():
        for tool in tools:
            if isinstance(tool, dict):
                name, description = tool.get("name", ""), tool.get("description", "")
            else:
                name, description = tool.name, tool.description
            lines.append(f"- {server_name}/{name}: {description}")
    return "\n".join(lines)


def global_prompt(tool_descriptions: str, mcp_tools: str = "") -> str:
    return f"""
You are an autonomous AI agent with access to the following tools, each of which can be
invoked as needed to accomplish tasks independently and completely:

{tool_descriptions}{mcp_tools}

Core directives:
- Analyze the request, break it into clear sequential steps and use exactly one tool per step.
- Use only the tools listed above. Do not invent tools, APIs or resources.
- Files live in a per-task sandbox; write final deliverables with fileSystem.
- Use chatCompletion to analyze or evaluate intermediate results.
- Do not ask the user for confirmation and never use placeholders.
- For simple questions that need no tools, use directAnswer.
{PLAN_FORMAT}"""


def planning_prompt(tool_descriptions: str, mcp_tools: str = "") -> str:
    return f"""
You are an AI agent that can execute complex tasks. You will be given a question and you
will need to plan a task to answer the question.
{global_prompt(tool_descriptions, mcp_tools)}
IMPORTANT INSTRUCTIONS:
1. For simple informational questions, use the directAnswer format immediately.
2. For complex tasks, break the solution into clear, sequential steps.
3. Each step must have a specific purpose and use a specific tool.
"""


def reasoning_prompt(task: str, step: Step, index: int, total: int, prior: List[StepResult]) -> str:
    previous = "\n".join(
        f"- {r.step}: {r.output_text(200)}..." for r in prior
    ) or "- none yet"
    return f"""
You are an autonomous AI agent using the ReAct (Reasoning + Acting) framework.

TASK: {task}

CURRENT STATE:
- You are at step {index + 1} of {total}
- The next step to execute is: {step.step} using {step.action}

PREVIOUS RESULTS:
{previous}

REASON about this step before executing it:
1. What information do you already have that's relevant?
2. What is the purpose of this specific step?
3. How should you approach this step to get the best results?
4. What potential issues might arise and how would you handle them?

Return your reasoning in this JSON format:
{{
  "reasoning": "Your step-by-step thought process",
  "approach": "How you will execute this step",
  "expectedOutcome": "What you expect to achieve",
  "fallbackPlan": "What to do if something goes wrong",
  "enhancedPrompt": "An improved instruction for this step that includes your reasoning"
}}
"""


def reflection_prompt(task: str, step: Step, index: int, total: int, result: Any, entry: Optional[ReasoningEntry]) -> str:
    previous = "No previous reasoning"
    if entry is not None and isinstance(entry.reasoning, dict) and entry.reasoning.get("reasoning"):
        previous = str(entry.reasoning["reasoning"])
    return f"""
You are an autonomous AI agent using the ReAct (Reasoning + Acting) framework.

TASK: {task}

STEP JUST EXECUTED:
- Step {index + 1} of {total}: {step.step} using {step.action}

RESULT OBTAINED:
{render_output(result, 500)}

PREVIOUS REASONING:
{previous}

REFLECT on this result:
1. Was the outcome what you expected? Why or why not?
2. What did you learn from this step?
3. Does this result change your understanding of the task?
4. Should the plan be adjusted based on this result?

Return your reflection in this JSON format:
{{
  "reflection": "Your detailed thoughts on the result",
  "successful": true,
  "learnings": "Key insights from this step",
  "changePlan": false,
  "explanation": "Why the plan should or shouldn't change",
  "nextSteps": "Recommendations for moving forward"
}}
"""


def progress_analysis_prompt(task: str, plan: Plan, trace: ExecutionTrace, completed: int, tool_descriptions: str) -> str:
    remaining = [step.to_dict() for step in plan.steps[completed:]]
    return f"""
You are analyzing the progress of an AI agent executing a complex task.
The original question was: {task}

The agent has completed {completed} steps out of {len(plan)} total steps.
Already completed steps can not be changed. Only add steps if absolutely necessary.

Based on the completed steps and their outputs, determine if the remaining plan needs to
be modified. If changes are needed, return a completely new plan for the REMAINING work in
the plan format below. Otherwise return {{"status": "{NO_CHANGES_NEEDED}"}}.

Completed steps and outputs: {json.dumps(trace.summarize(500), indent=2, default=str)}

Remaining steps in the plan: {json.dumps(remaining, indent=2)}

Available tools:
{tool_descriptions}
{PLAN_FORMAT}"""


def finalization_prompt(task: str, trace: ExecutionTrace) -> str:
    files = [artifact.path for artifact in trace.artifacts]
    files_note = f"\nFiles produced: {', '.join(files)}\n" if files else ""
    return f"""
You are finalizing a complex task executed by an AI agent.
The original question was: {task}

INSTRUCTIONS (FOLLOW THESE EXACTLY):
1. Your response must be in plain text format only. Do not use JSON.
2. Provide a direct, conversational answer as if speaking directly to the user.
3. Be concise and accurate, and include only information relevant to the question.
4. If files were created, briefly mention their names and purpose.
5. If any part of the task failed, say so plainly.
{files_note}
Completed steps and outputs: {json.dumps(trace.summarize(1000), indent=2, default=str)}
"""


def fallback_answer(trace: ExecutionTrace, error: Optional[BaseException] = None) -> str:
    """Answer used when final synthesis fails"""
    reason = f" ({error})" if error is not None and str(error) else ""
    lines = [f"The task completed with errors: the final answer could not be synthesized{reason}."]
    if len(trace):
        lines.append("Results of the executed steps:")
        for result in trace:
            status = "error" if result.error else ("skipped" if result.placeholder else "ok")
            lines.append(f"- [{status}] {result.action}: {result.output_text(300)}")
    return "\n".join(lines)
