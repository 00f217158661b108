"""
End-to-end tests for PlanExecutor with a scripted model and an in-memory
Docker client
"""

import json

import pytest

from conftest import Hang, ScriptedLLM

from ai_operon.core.llm_provider import LLMError
from ai_operon.memory.reasoning_store import JsonlReasoningStore
from ai_operon.orchestration.orchestrator import PlanExecutor
from ai_operon.orchestration.plan import PlanningError, Step, StepResult
from ai_operon.tools import ChatCompletionExecutor, FileSystemExecutor, WriterExecutor
from ai_operon.tools.tool_registry import Executor, ExecutorContext, ExecutorRegistry


class ExplodingExecutor(Executor):
    name = "explode"
    description = "always raises"

    async def execute(self, step: Step, context: ExecutorContext) -> StepResult:
        raise RuntimeError("kaboom")


def make_registry() -> ExecutorRegistry:
    return ExecutorRegistry([
        ChatCompletionExecutor(),
        WriterExecutor(),
        FileSystemExecutor(),
        ExplodingExecutor(),
    ])


def plan_of(*steps) -> dict:
    return {f"step{i + 1}": step for i, step in enumerate(steps)}


def writer_step(text: str) -> dict:
    return {"step": text, "action": "writer", "expectedOutput": "text", "usingData": "all"}


class TestPlanExecution:

    @pytest.mark.asyncio
    async def test_direct_answer_skips_execution(self, make_manager, docker_client):
        llm = ScriptedLLM(plan={"directAnswer": True, "answer": "Paris"})
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("What is the capital of France?")

        assert report.answer == "Paris"
        assert report.direct
        assert len(report.trace) == 0
        assert docker_client.containers.run_calls == []
        assert llm.counts["reasoning"] == 0
        assert llm.counts["final"] == 0
        assert llm.calls[0]["model"] == "planner"

    @pytest.mark.asyncio
    async def test_every_dispatched_step_is_recorded(self, make_manager):
        llm = ScriptedLLM(plan=plan_of(
            writer_step("Draft an outline"),
            {"step": "Open the docs site", "action": "webBrowser"},
            {"step": "Review the outline", "action": "chatCompletion", "usingData": "writer"},
        ))
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Write an outline")

        assert [r.action for r in report.trace] == ["writer", "webBrowser", "chatCompletion"]
        assert report.trace[1].placeholder
        assert "Unknown action: webBrowser" in report.trace[1].output
        # unknown actions are not reasoned about
        assert llm.counts["reasoning"] == 2
        assert len(report.reasoning) == 2
        assert report.answer == "Final answer"

    @pytest.mark.asyncio
    async def test_using_data_feeds_selected_results(self, make_manager):
        llm = ScriptedLLM(plan=plan_of(
            writer_step("Draft"),
            {"step": "Check the draft", "action": "chatCompletion", "usingData": "writer"},
        ))
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        await executor.execute("Write something")

        chat_call = [c for c in llm.calls if c["system"] == "Check the draft"][0]
        assert chat_call["prompt"] == "writer: executor output"

    @pytest.mark.asyncio
    async def test_enhanced_prompt_replaces_instruction(self, make_manager):
        llm = ScriptedLLM(
            plan=plan_of({"step": "Summarize", "action": "chatCompletion"}),
            reasoning={"reasoning": "be precise", "enhancedPrompt": "Summarize in three bullet points"},
        )
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Summarize the news")

        systems = [c["system"] for c in llm.calls if c["kind"] == "executor"]
        assert systems == ["Summarize in three bullet points"]
        assert report.trace[0].step == "Summarize"

    @pytest.mark.asyncio
    async def test_step_exception_becomes_error_result(self, make_manager):
        llm = ScriptedLLM(plan=plan_of(
            {"step": "Break things", "action": "explode"},
            writer_step("Carry on"),
        ))
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Try hard")

        assert len(report.trace) == 2
        assert report.trace[0].error == "kaboom"
        assert report.trace[0].output == {"error": "kaboom", "success": False}
        assert report.trace[1].ok
        assert report.reasoning[0].error == "step failed: kaboom"

    @pytest.mark.asyncio
    async def test_reasoning_failure_does_not_stop_the_step(self, make_manager):
        llm = ScriptedLLM(
            plan=plan_of(writer_step("Draft")),
            reasoning=LLMError("model overloaded"),
            reflection=LLMError("model overloaded"),
        )
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Write")

        assert report.trace[0].ok
        assert "reflection failed" in report.reasoning[0].error


class TestSandboxLifecycle:

    @pytest.mark.asyncio
    async def test_file_written_in_task_sandbox_which_is_destroyed(self, make_manager, docker_client):
        llm = ScriptedLLM(plan=plan_of({
            "step": "Save a greeting",
            "action": "fileSystem",
            "params": {"path": "hello.txt", "content": "Hello"},
        }))
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Write hello.txt", user_id="u1", session_id="s1")

        assert report.sandbox_id is not None
        container = docker_client.containers.created[report.sandbox_id]
        assert container.files["/app/hello.txt"] == b"Hello"
        assert container.labels == {"ai_operon.task": report.task_id}
        assert docker_client.containers.removed == [report.sandbox_id]
        assert [a.path for a in report.artifacts] == ["/app/hello.txt"]

    @pytest.mark.asyncio
    async def test_model_driven_file_operations(self, make_manager, docker_client):
        llm = ScriptedLLM(
            plan=plan_of({"step": "Save notes", "action": "fileSystem"}),
            executor=[
                {"action": "saveToFile", "path": "notes", "filename": "todo.md", "content": "- milk"},
                {"action": "close", "summary": "saved notes/todo.md"},
            ],
        )
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Take notes")

        container = docker_client.containers.created[report.sandbox_id]
        assert container.files["/app/notes/todo.md"] == b"- milk"
        assert report.trace[0].output["summary"] == "saved notes/todo.md"

    @pytest.mark.asyncio
    async def test_no_sandbox_without_sandboxed_steps(self, make_manager, docker_client):
        llm = ScriptedLLM(plan=plan_of(writer_step("Draft")))
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Write")

        assert report.sandbox_id is None
        assert docker_client.containers.run_calls == []

    @pytest.mark.asyncio
    async def test_sandbox_destroyed_when_finalization_fails(self, make_manager, docker_client):
        llm = ScriptedLLM(
            plan=plan_of({"step": "Save", "action": "fileSystem", "params": {"path": "a.txt", "content": "A"}}),
            final=LLMError("model offline"),
        )
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Save a")

        assert report.answer.startswith("The task completed with errors")
        assert docker_client.containers.items == {}
        assert docker_client.containers.removed == [report.sandbox_id]


class TestReplanning:

    @pytest.mark.asyncio
    async def test_no_progress_check_before_enough_steps(self, make_manager):
        llm = ScriptedLLM(
            plan=plan_of(writer_step("One"), writer_step("Two")),
            reflection={"reflection": "redo everything", "changePlan": True},
        )
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Two steps")

        assert llm.counts["progress"] == 0
        assert report.replans == 0
        assert len(report.trace) == 2

    @pytest.mark.asyncio
    async def test_replan_splices_remaining_steps(self, make_manager):
        llm = ScriptedLLM(
            plan=plan_of(writer_step("One"), writer_step("Two"), writer_step("Three"), writer_step("Four")),
            reflection={"reflection": "needs a review", "changePlan": "true"},
            progress=plan_of({"step": "Review everything", "action": "chatCompletion"}),
        )
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Four steps")

        assert llm.counts["progress"] == 1
        assert report.replans == 1
        assert [r.step for r in report.trace] == ["One", "Two", "Three", "Review everything"]
        assert [s.step for s in report.plan] == ["One", "Two", "Three", "Review everything"]

    @pytest.mark.asyncio
    async def test_no_changes_needed_keeps_plan(self, make_manager):
        llm = ScriptedLLM(
            plan=plan_of(writer_step("One"), writer_step("Two"), writer_step("Three"), writer_step("Four")),
            reflection={"changePlan": True},
            progress="NO_CHANGES_NEEDED",
        )
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        report = await executor.execute("Four steps")

        assert llm.counts["progress"] == 1
        assert report.replans == 0
        assert [r.step for r in report.trace] == ["One", "Two", "Three", "Four"]

    @pytest.mark.asyncio
    async def test_progress_check_timeout_keeps_plan(self, make_manager):
        llm = ScriptedLLM(
            plan=plan_of(writer_step("One"), writer_step("Two"), writer_step("Three")),
            reflection={"changePlan": True},
            progress=Hang,
        )
        executor = PlanExecutor(
            llm, make_registry(), sandbox_manager=make_manager(),
            settings={"progress_check_timeout_sec": 0.05}
        )

        report = await executor.execute("Three steps")

        assert llm.counts["progress"] == 1
        assert report.replans == 0
        assert len(report.trace) == 3
        assert report.answer == "Final answer"


class TestFinalizationAndFailures:

    @pytest.mark.asyncio
    async def test_finalization_timeout_uses_fallback(self, make_manager):
        llm = ScriptedLLM(plan=plan_of(writer_step("Draft")), final=Hang)
        executor = PlanExecutor(
            llm, make_registry(), sandbox_manager=make_manager(),
            settings={"finalization_timeout_sec": 0.05}
        )

        answer = await executor.run("Write")

        assert answer.startswith("The task completed with errors")
        assert "timed out" in answer
        assert "[ok] writer: executor output" in answer

    @pytest.mark.asyncio
    async def test_empty_final_answer_uses_fallback(self, make_manager):
        llm = ScriptedLLM(plan=plan_of(writer_step("Draft")), final="   ")
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        answer = await executor.run("Write")

        assert answer.startswith("The task completed with errors")

    @pytest.mark.asyncio
    async def test_planning_error_is_fatal(self, make_manager, docker_client):
        llm = ScriptedLLM(plan=LLMError("connection refused"))
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        with pytest.raises(PlanningError, match="connection refused"):
            await executor.execute("Anything")
        assert docker_client.containers.run_calls == []

    @pytest.mark.asyncio
    async def test_plan_without_steps_is_fatal(self, make_manager):
        llm = ScriptedLLM(plan={"thoughts": "hmm"})
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager())

        with pytest.raises(PlanningError):
            await executor.execute("Anything")


class TestReasoningPersistence:

    @pytest.mark.asyncio
    async def test_reasoning_saved_per_session(self, make_manager, tmp_path):
        store = JsonlReasoningStore(str(tmp_path / "traces"))
        llm = ScriptedLLM(plan=plan_of(writer_step("One"), writer_step("Two")))
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager(), reasoning_store=store)

        await executor.execute("Two steps", user_id="alice", session_id="s1")

        entries = await store.load("alice", "s1")
        assert [e["step"] for e in entries] == ["One", "Two"]
        assert entries[0]["reasoning"] == {"reasoning": "think", "approach": "do it"}
        assert entries[1]["reflection"]["changePlan"] is False

        path = store.path_for("alice", "s1")
        lines = path.read_text().splitlines()
        assert [json.loads(line)["step_index"] for line in lines] == [0, 1]

    @pytest.mark.asyncio
    async def test_reasoning_saved_when_finalization_fails(self, make_manager, tmp_path):
        store = JsonlReasoningStore(str(tmp_path / "traces"))
        llm = ScriptedLLM(plan=plan_of(writer_step("One")), final=LLMError("offline"))
        executor = PlanExecutor(llm, make_registry(), sandbox_manager=make_manager(), reasoning_store=store)

        await executor.execute("One step", user_id="bob", session_id="s2")

        assert len(await store.load("bob", "s2")) == 1
