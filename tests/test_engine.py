"""
AgentGate Engine Tests

Tests for the workflow run loop: retries, error handling, events,
cancellation, listing, and human approval pause/resume.
"""

import asyncio

import pytest

from agentgate.core import (
    InstanceNotFoundError,
    InvalidApprovalError,
    InvalidInstanceStateError,
    WorkflowEngine,
    WorkflowNotFoundError,
)
from agentgate.schemas import (
    AuthContext,
    ExecutionContext,
    InitiatorType,
    InstanceFilters,
    StepStatus,
    StepType,
    WorkflowErrorCode,
    WorkflowEventType,
    WorkflowStatus,
)

from conftest import definition, make_node_config, ref, register_action, run, tool_step, transform_step


class FlakyTool:
    """Fails the first `failures` calls, then returns a value."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self, auth, input):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"boom {self.calls}")
        return {"ok": True, "call": self.calls}


class TestEndToEnd:
    """Test complete runs."""

    @pytest.mark.asyncio
    async def test_ai_action_then_transform(self, engine, workflows, actions):
        """An ai_action feeding a transform completes with the transform's output."""
        seen = []

        async def summarize(ctx, input):
            seen.append(input)
            return {"summary": "hi"}

        register_action(actions, "ai.test-summary", summarize)
        wf = definition([
            {
                "id": "summarize",
                "type": "ai_action",
                "config": {"action_id": "ai.test-summary"},
                "input_mapping": {"content": ref("input", "content")},
                "next": "shape",
            },
            transform_step("shape", {"summary": ref("summarize", "summary")}),
        ])
        context = ExecutionContext(node_config=make_node_config(enabled_actions=["ai.test-summary"]))

        instance = await run(engine, workflows, wf, {"content": "hello"}, context)

        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.output == {"summary": "hi"}
        assert seen == [{"content": "hello"}]
        assert instance.history == ["summarize", "shape"]
        assert instance.completed_at is not None

    @pytest.mark.asyncio
    async def test_start_returns_pending_snapshot(self, engine, workflows):
        workflows.register(definition([transform_step("a")]))

        started = await engine.start("wf.test", {"x": 1})

        assert started.status == WorkflowStatus.PENDING
        assert started.id.startswith("wf_")
        assert started.current_step_id == "a"
        await engine.wait(started.id, timeout=5)

    @pytest.mark.asyncio
    async def test_unknown_definition(self, engine):
        with pytest.raises(WorkflowNotFoundError):
            await engine.start("nope")

    @pytest.mark.asyncio
    async def test_initiator_from_auth(self, engine, workflows):
        context = ExecutionContext(auth=AuthContext(user_id="user_1", is_authenticated=True))

        instance = await run(engine, workflows, definition([transform_step("a")]), {}, context)

        assert instance.initiator.type == InitiatorType.USER
        assert instance.initiator.id == "user_1"

    @pytest.mark.asyncio
    async def test_final_state_persisted(self, engine, workflows, store):
        instance = await run(engine, workflows, definition([transform_step("a")]), {"k": "v"})

        stored = await store.get(instance.id)
        assert stored.status == WorkflowStatus.COMPLETED
        assert stored.output == {}
        assert stored.input == {"k": "v"}


class TestRetries:
    """Test per-step retry."""

    RETRY = {"max_attempts": 3, "delay_ms": 10, "backoff_multiplier": 2}

    @pytest.mark.asyncio
    async def test_always_failing_step_exhausts_attempts(self, engine, workflows, tools):
        tool = FlakyTool(failures=100)
        tools.register("flaky", tool)

        instance = await run(engine, workflows, definition([tool_step("call", "flaky", retry=self.RETRY)]))

        result = instance.step_results["call"]
        assert result.attempts == 3
        assert result.status == StepStatus.FAILED
        assert tool.calls == 3
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error.code == WorkflowErrorCode.STEP_FAILED
        assert instance.error.step_id == "call"
        assert instance.error.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_success_on_second_attempt(self, engine, workflows, tools):
        tools.register("flaky", FlakyTool(failures=1))

        instance = await run(engine, workflows, definition([tool_step("call", "flaky", retry=self.RETRY)]))

        result = instance.step_results["call"]
        assert result.attempts == 2
        assert result.status == StepStatus.COMPLETED
        assert result.output == {"ok": True, "call": 2}
        assert instance.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_on_error_retry_uses_default_attempts(self, engine, workflows, tools):
        tool = FlakyTool(failures=100)
        tools.register("flaky", tool)

        await run(engine, workflows, definition([tool_step("call", "flaky", on_error={"action": "retry"})]))

        assert tool.calls == 3

    @pytest.mark.asyncio
    async def test_policy_violation_is_not_retried(self, engine, workflows, actions):
        calls = []

        async def read_dms(ctx, input):
            calls.append(input)
            return {}

        register_action(actions, "ai.dm-reader", read_dms, {"send_dm": True})
        wf = definition([{
            "id": "read",
            "type": "ai_action",
            "config": {"action_id": "ai.dm-reader"},
            "retry": self.RETRY,
        }])
        context = ExecutionContext(node_config=make_node_config(
            enabled_actions=["ai.dm-reader"],
            data_policy={"send_dm": False},
        ))

        instance = await run(engine, workflows, wf, {}, context)

        assert calls == []
        assert instance.step_results["read"].attempts == 1
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error.details == {
            "error_type": "DataPolicyViolation",
            "code": "DATA_POLICY_VIOLATION",
            "fields": ["send_dm"],
        }

    @pytest.mark.asyncio
    async def test_tool_timeout_fails_step(self, engine, workflows, tools):
        async def slow(auth, input):
            await asyncio.sleep(1)

        tools.register("slow", slow)

        instance = await run(engine, workflows, definition([tool_step("call", "slow", timeout=20)]))

        assert instance.status == WorkflowStatus.FAILED
        assert instance.error.details["error_type"] == "TimeoutError"


class TestErrorHandling:
    """Test onError skip / fallback / fail."""

    @pytest.mark.asyncio
    async def test_skip_continues_with_next(self, engine, workflows, tools):
        tools.register("broken", FlakyTool(failures=100))
        wf = definition([
            tool_step("call", "broken", next_step="after", on_error={"action": "skip"}),
            transform_step("after", {"skipped": ref("call")}),
        ])

        instance = await run(engine, workflows, wf)

        assert instance.step_results["call"].status == StepStatus.SKIPPED
        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.output == {"skipped": None}

    @pytest.mark.asyncio
    async def test_fallback_jumps_to_step(self, engine, workflows, tools):
        tools.register("broken", FlakyTool(failures=100))
        wf = definition([
            tool_step("call", "broken", next_step="normal", on_error={"action": "fallback", "fallback_step": "recover"}),
            transform_step("normal", {"path": "normal"}),
            transform_step("recover", {"path": "recover"}),
        ])

        instance = await run(engine, workflows, wf)

        assert instance.history == ["call", "recover"]
        assert instance.output == {"path": "recover"}
        assert "normal" not in instance.step_results

    @pytest.mark.asyncio
    async def test_custom_failure_message(self, engine, workflows, tools):
        tools.register("broken", FlakyTool(failures=100))
        wf = definition([tool_step("call", "broken", on_error={"action": "fail", "message": "Could not load"})])

        instance = await run(engine, workflows, wf)

        assert instance.error.message == "Could not load"
        assert instance.step_results["call"].error == "boom 1"

    @pytest.mark.asyncio
    async def test_unknown_next_step(self, engine, workflows):
        async def to_nowhere(step, step_input, sctx):
            return {"selected_branch": "ghost"}

        engine.register_handler(StepType.CONDITION, to_nowhere)
        wf = definition([{
            "id": "check",
            "type": "condition",
            "config": {"branches": [{"condition": "true", "next_step": "end"}]},
        }, transform_step("end")])

        instance = await run(engine, workflows, wf)

        assert instance.status == WorkflowStatus.FAILED
        assert instance.error.code == WorkflowErrorCode.STEP_NOT_FOUND
        assert instance.error.step_id == "ghost"
        assert instance.step_results["check"].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_step_handler_override(self, workflows, actions, settings):
        async def constant(step, step_input, sctx):
            return "overridden"

        engine = WorkflowEngine(workflows, actions, settings=settings, step_handlers={StepType.TRANSFORM: constant})

        instance = await run(engine, workflows, definition([transform_step("a")]))

        assert instance.output == "overridden"


class TestEvents:
    """Test the event stream."""

    @pytest.mark.asyncio
    async def test_event_order(self, engine, workflows):
        events = []
        engine.add_event_handler(events.append)

        instance = await run(engine, workflows, definition([
            transform_step("a", next_step="b"),
            transform_step("b"),
        ]))

        assert [e.type for e in events] == [
            WorkflowEventType.STARTED,
            WorkflowEventType.STEP_STARTED,
            WorkflowEventType.STEP_COMPLETED,
            WorkflowEventType.STEP_STARTED,
            WorkflowEventType.STEP_COMPLETED,
            WorkflowEventType.COMPLETED,
        ]
        assert all(e.instance_id == instance.id for e in events)
        assert events[1].step_id == "a"

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, engine, workflows, caplog):
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        async def healthy(event):
            received.append(event.type)

        engine.add_event_handler(broken)
        engine.add_event_handler(healthy)

        instance = await run(engine, workflows, definition([transform_step("a")]))

        assert instance.status == WorkflowStatus.COMPLETED
        assert received[-1] == WorkflowEventType.COMPLETED
        assert "listener bug" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_events(self, engine, workflows, tools):
        events = []
        engine.add_event_handler(events.append)
        tools.register("broken", FlakyTool(failures=100))

        await run(engine, workflows, definition([tool_step("call", "broken")]))

        types = [e.type for e in events]
        assert types[-2:] == [WorkflowEventType.STEP_FAILED, WorkflowEventType.FAILED]
        assert events[-1].error.code == WorkflowErrorCode.STEP_FAILED

    @pytest.mark.asyncio
    async def test_remove_handler(self, engine, workflows):
        events = []
        engine.add_event_handler(events.append)
        engine.remove_event_handler(events.append)

        await run(engine, workflows, definition([transform_step("a")]))

        assert events == []


class TestCancel:
    """Test cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_step(self, engine, workflows, tools):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def blocking(auth, input):
            entered.set()
            await release.wait()
            return "done"

        tools.register("block", blocking)
        workflows.register(definition([tool_step("wait", "block", next_step="after"), transform_step("after")]))
        events = []
        engine.add_event_handler(events.append)

        started = await engine.start("wf.test")
        await asyncio.wait_for(entered.wait(), timeout=5)
        cancelled = await engine.cancel(started.id)
        release.set()
        final = await engine.wait(started.id, timeout=5)

        assert cancelled.status == WorkflowStatus.CANCELLED
        assert final.status == WorkflowStatus.CANCELLED
        assert "after" not in final.step_results
        assert WorkflowEventType.CANCELLED in [e.type for e in events]
        assert WorkflowEventType.COMPLETED not in [e.type for e in events]

    @pytest.mark.asyncio
    async def test_cancel_completed_rejected(self, engine, workflows):
        instance = await run(engine, workflows, definition([transform_step("a")]))

        with pytest.raises(InvalidInstanceStateError):
            await engine.cancel(instance.id)

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, engine):
        with pytest.raises(InstanceNotFoundError):
            await engine.cancel("wf_missing")


class TestListing:
    """Test instance lookup and listing."""

    @pytest.mark.asyncio
    async def test_filters_and_paging(self, engine, workflows, tools):
        tools.register("broken", FlakyTool(failures=100))
        ok = await run(engine, workflows, definition([transform_step("a")], id="wf.ok"))
        bad = await run(engine, workflows, definition([tool_step("call", "broken")], id="wf.bad"))
        newest = await run(engine, workflows, definition([transform_step("a")], id="wf.ok"))

        by_definition = await engine.list_instances(InstanceFilters(definition_id="wf.ok"))
        assert [i.id for i in by_definition] == [newest.id, ok.id]

        failed = await engine.list_instances(InstanceFilters(status=[WorkflowStatus.FAILED]))
        assert [i.id for i in failed] == [bad.id]

        page = await engine.list_instances(InstanceFilters(limit=1, offset=1))
        assert [i.id for i in page] == [bad.id]

    @pytest.mark.asyncio
    async def test_get_instance_returns_snapshot(self, engine, workflows):
        instance = await run(engine, workflows, definition([transform_step("a")]))

        snapshot = await engine.get_instance(instance.id)
        snapshot.output = "mutated"

        assert (await engine.get_instance(instance.id)).output == {}
        assert await engine.get_instance("wf_missing") is None

    @pytest.mark.asyncio
    async def test_stored_instances_listed_after_restart(self, engine, workflows, actions, store, settings):
        instance = await run(engine, workflows, definition([transform_step("a")]))

        restarted = WorkflowEngine(workflows, actions, store=store, settings=settings)

        assert [i.id for i in await restarted.list_instances()] == [instance.id]
        assert (await restarted.get_instance(instance.id)).status == WorkflowStatus.COMPLETED


def approval_workflow(**approval_config):
    return definition([
        transform_step("prepare", {"draft": ref("input", "draft")}, next_step="ask"),
        {
            "id": "ask",
            "type": "human_approval",
            "config": {"message": "Publish?", **approval_config},
            "next": "publish",
        },
        transform_step("publish", {
            "draft": ref("prepare", "draft"),
            "approved": ref("ask", "approved"),
            "choice": ref("ask", "choice"),
        }),
    ])


class TestHumanApproval:
    """Test pause and resume."""

    @pytest.mark.asyncio
    async def test_pauses_with_continuation(self, engine, workflows, store):
        events = []
        engine.add_event_handler(events.append)

        paused = await run(engine, workflows, approval_workflow(), {"draft": "text"})

        assert paused.status == WorkflowStatus.PAUSED
        assert paused.current_step_id == "ask"
        assert paused.suspended.step_id == "ask"
        assert paused.step_results["ask"].output["waiting_for_approval"] is True
        assert "publish" not in paused.step_results
        approvals = [e for e in events if e.type == WorkflowEventType.APPROVAL_REQUIRED]
        assert len(approvals) == 1
        assert approvals[0].message == "Publish?"
        assert WorkflowEventType.COMPLETED not in [e.type for e in events]
        assert (await store.get(paused.id)).suspended.step_id == "ask"

    @pytest.mark.asyncio
    async def test_pause_announced_after_step_completes(self, engine, workflows):
        events = []
        engine.add_event_handler(events.append)

        await run(engine, workflows, approval_workflow(), {"draft": "text"})

        assert [(e.type, getattr(e, "step_id", None)) for e in events][-2:] == [
            (WorkflowEventType.STEP_COMPLETED, "ask"),
            (WorkflowEventType.APPROVAL_REQUIRED, "ask"),
        ]

    @pytest.mark.asyncio
    async def test_handler_approving_immediately(self, engine, workflows):
        """Answering from the approval event continues in exactly one run loop."""
        started_steps = []

        async def auto_approve(event):
            if event.type == WorkflowEventType.STEP_STARTED:
                started_steps.append(event.step_id)
            if event.type == WorkflowEventType.APPROVAL_REQUIRED:
                await engine.submit_approval(event.instance_id, event.step_id, approved=True)

        engine.add_event_handler(auto_approve)

        first = await run(engine, workflows, approval_workflow(), {"draft": "text"})
        final = await engine.wait(first.id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert started_steps == ["prepare", "ask", "publish"]
        assert final.history == ["prepare", "ask", "publish"]
        assert final.step_results["ask"].output["waiting_for_approval"] is False
        assert final.output == {"draft": "text", "approved": True, "choice": None}

    @pytest.mark.asyncio
    async def test_approval_while_pause_is_being_announced(self, engine, workflows):
        """An approval arriving during a slow event handler waits for the pausing loop."""
        async def slow_handler(event):
            if event.type == WorkflowEventType.APPROVAL_REQUIRED:
                await asyncio.sleep(0.1)

        engine.add_event_handler(slow_handler)
        workflows.register(approval_workflow(), replace=True)
        started = await engine.start("wf.test", {"draft": "text"})

        for _ in range(100):
            if (await engine.get_instance(started.id)).status == WorkflowStatus.PAUSED:
                break
            await asyncio.sleep(0.005)

        await engine.submit_approval(started.id, "ask", approved=True)
        final = await engine.wait(started.id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert final.history == ["prepare", "ask", "publish"]
        assert final.output["approved"] is True

    @pytest.mark.asyncio
    async def test_approval_continues_run(self, engine, workflows):
        paused = await run(engine, workflows, approval_workflow(), {"draft": "text"})

        resumed = await engine.submit_approval(paused.id, "ask", approved=True)
        final = await engine.wait(paused.id, timeout=5)

        assert resumed.status == WorkflowStatus.RUNNING
        assert final.status == WorkflowStatus.COMPLETED
        assert final.output == {"draft": "text", "approved": True, "choice": None}
        assert final.step_results["ask"].status == StepStatus.COMPLETED
        assert final.step_results["ask"].output["waiting_for_approval"] is False

    @pytest.mark.asyncio
    async def test_manual_continue(self, engine, workflows, settings):
        settings.resume_continues = False
        paused = await run(engine, workflows, approval_workflow(), {"draft": "text"})

        resumed = await engine.resume(paused.id, {"approved": False, "note": "later"})
        assert resumed.status == WorkflowStatus.RUNNING
        assert resumed.current_step_id == "publish"
        assert "publish" not in resumed.step_results

        await engine.continue_instance(paused.id)
        final = await engine.wait(paused.id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert final.output["approved"] is False
        assert final.step_results["ask"].output["note"] == "later"

    @pytest.mark.asyncio
    async def test_explicit_continue_flag_overrides_settings(self, engine, workflows):
        paused = await run(engine, workflows, approval_workflow(), {"draft": "text"})

        await engine.resume(paused.id, {"approved": True}, continue_execution=False)

        assert (await engine.get_instance(paused.id)).status == WorkflowStatus.RUNNING
        with pytest.raises(InvalidInstanceStateError):
            await engine.resume(paused.id, {"approved": True})

    @pytest.mark.asyncio
    async def test_choice_validation(self, engine, workflows):
        wf = approval_workflow(approval_type="choice", choices=["now", "tomorrow"])
        paused = await run(engine, workflows, wf, {"draft": "text"})

        with pytest.raises(InvalidApprovalError):
            await engine.submit_approval(paused.id, "ask", approved=True, choice="never")
        with pytest.raises(InvalidApprovalError):
            await engine.submit_approval(paused.id, "other_step", approved=True, choice="now")

        await engine.submit_approval(paused.id, "ask", approved=True, choice="tomorrow")
        final = await engine.wait(paused.id, timeout=5)
        assert final.output["choice"] == "tomorrow"

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, engine, workflows):
        instance = await run(engine, workflows, definition([transform_step("a")]))

        with pytest.raises(InvalidInstanceStateError):
            await engine.resume(instance.id, {"approved": True})

    @pytest.mark.asyncio
    async def test_cancel_paused(self, engine, workflows):
        paused = await run(engine, workflows, approval_workflow(), {"draft": "text"})

        cancelled = await engine.cancel(paused.id)

        assert cancelled.status == WorkflowStatus.CANCELLED
        assert cancelled.suspended is None
        with pytest.raises(InvalidInstanceStateError):
            await engine.submit_approval(paused.id, "ask", approved=True)

    @pytest.mark.asyncio
    async def test_resume_after_restart(self, engine, workflows, actions, store, settings):
        paused = await run(engine, workflows, approval_workflow(), {"draft": "text"})
        await engine.close()

        restarted = WorkflowEngine(workflows, actions, store=store, settings=settings)
        await restarted.submit_approval(paused.id, "ask", approved=True)
        final = await restarted.wait(paused.id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert final.output == {"draft": "text", "approved": True, "choice": None}
