import asyncio

import pytest

from thread_loop.builtin import FinishRequestTool, PostMessageTool
from thread_loop.config import LoopSettings
from thread_loop.exceptions import RecoveryFailedError
from thread_loop.loop import (
    ERROR_PSEUDO_TOOL,
    ITERATION_LIMIT_SUMMARY,
    MAX_ITERATIONS,
    ConversationLoop,
    LoopState,
)
from thread_loop.model import LLMClient, NextAction, ToolCall
from thread_loop.state import ThreadState
from thread_loop.tools import Tool, ToolInput


# --- Test fixtures ---


def propose(tool, reasoning=None, **parameters):
    return NextAction(
        tool_calls=[ToolCall(tool=tool, parameters=parameters, reasoning=reasoning)]
    )


class ScriptedLLM(LLMClient):
    """Returns the scripted actions in order, then repeats the last one."""

    def __init__(self, *actions):
        self.actions = list(actions)
        self.calls = 0

    async def next_action(self, state, tools, **kwargs):
        self.calls += 1
        if not self.actions:
            return NextAction()
        action = self.actions.pop(0) if len(self.actions) > 1 else self.actions[0]
        if isinstance(action, Exception):
            raise action
        return action


class AlwaysLookupLLM(LLMClient):
    """Never finishes; proposes a fresh lookup every time."""

    def __init__(self):
        self.calls = 0

    async def next_action(self, state, tools, **kwargs):
        self.calls += 1
        return propose("lookup", query=f"q{self.calls}")


class LookupInput(ToolInput):
    query: str = ""


class LookupTool(Tool):
    name = "lookup"
    description = "Looks something up"
    input_model = LookupInput

    def __init__(self):
        self.invocations = 0

    async def execute(self, args, state):
        self.invocations += 1
        return {"answer": f"result for {args.query}"}


class ExplodeTool(Tool):
    name = "explode"
    description = "Always fails"

    async def execute(self, args, state):
        raise RuntimeError("boom")


def make_loop(llm, **kwargs):
    sent = []

    async def send(message):
        sent.append(message)
        return f"msg-{len(sent)}"

    lookup = LookupTool()
    tools = [FinishRequestTool(), PostMessageTool(send), lookup, ExplodeTool()]
    return ConversationLoop(llm=llm, tools=tools, **kwargs), sent, lookup


# --- Tests ---


class TestLoopInit:
    def test_defaults(self):
        loop, _, _ = make_loop(ScriptedLLM())
        assert loop.max_iterations == MAX_ITERATIONS == 10
        assert loop.terminal_tool == "finish_request"
        assert loop.message_tools == frozenset({"post_message"})
        assert len(loop.tools) == 4

    def test_rejects_zero_iterations(self):
        with pytest.raises(ValueError):
            make_loop(ScriptedLLM(), max_iterations=0)

    def test_from_settings(self):
        settings = LoopSettings(max_iterations=3, tool_timeout=2.5)
        loop = ConversationLoop.from_settings(ScriptedLLM(), [FinishRequestTool()], settings)
        assert loop.max_iterations == 3
        assert loop.executor.timeout == 2.5


class TestTermination:
    @pytest.mark.asyncio
    async def test_terminal_tool_on_first_iteration(self):
        llm = ScriptedLLM(propose("finish_request", summary="done"))
        loop, _, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.state == LoopState.COMPLETED
        assert outcome.reason == "terminal"
        assert outcome.iterations == 1
        assert outcome.dispatches == 1
        assert outcome.result["complete"] is True
        assert outcome.result["summary"] == "done"
        assert llm.calls == 1
        assert len(state.ledger) == 1

    @pytest.mark.asyncio
    async def test_empty_proposal_stops_without_terminal_call(self):
        llm = ScriptedLLM(NextAction(tool_calls=[]))
        loop, _, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "no_action"
        assert outcome.iterations == 1
        assert outcome.dispatches == 0
        assert state.ledger == {}

    @pytest.mark.asyncio
    async def test_iteration_limit_forces_completion(self):
        llm = AlwaysLookupLLM()
        loop, _, lookup = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "iteration_limit"
        assert llm.calls == 10
        assert lookup.invocations == 10
        assert outcome.dispatches == 11

        forced = list(state.ledger.values())[-1]
        assert forced.tool_name == "finish_request"
        assert forced.arguments["summary"] == ITERATION_LIMIT_SUMMARY
        assert forced.result["summary"] == "Auto-completed due to iteration limit"

        note = state.messages[-1]
        assert note.is_system_note
        assert "maximum of 10 iterations" in note.text

    @pytest.mark.asyncio
    async def test_forced_completion_runs_again_on_later_request(self):
        loop, _, _ = make_loop(AlwaysLookupLLM(), max_iterations=2)
        state = ThreadState(thread_id="T1")
        await loop.run(state)

        state.set_button_state("button_yes_1", "active", {"text": "Yes"})
        state.set_metadata("last_button_selection", {"action_id": "button_yes_1"})
        loop.llm = AlwaysLookupLLM()
        outcome = await loop.run(state)

        assert outcome.reason == "iteration_limit"
        finishes = [r for r in state.ledger.values() if r.tool_name == "finish_request"]
        assert len(finishes) == 2
        assert all(r.arguments["summary"] == ITERATION_LIMIT_SUMMARY for r in finishes)
        assert finishes[0].arguments["reasoning"] != finishes[1].arguments["reasoning"]
        assert state.get_button_state("button_yes_1").state == "resolved"

    @pytest.mark.asyncio
    async def test_custom_iteration_limit(self):
        llm = AlwaysLookupLLM()
        loop, _, lookup = make_loop(llm, max_iterations=3)

        outcome = await loop.run(ThreadState(thread_id="T1"))

        assert outcome.reason == "iteration_limit"
        assert lookup.invocations == 3

    @pytest.mark.asyncio
    async def test_repeated_identical_call_runs_once(self):
        llm = ScriptedLLM(propose("lookup", query="same"))
        loop, _, lookup = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "iteration_limit"
        assert lookup.invocations == 1
        assert len(state.ledger) == 2  # lookup + forced finish

    @pytest.mark.asyncio
    async def test_only_first_proposed_call_is_used(self):
        action = NextAction(
            tool_calls=[
                ToolCall(tool="finish_request", parameters={}),
                ToolCall(tool="lookup", parameters={"query": "ignored"}),
            ]
        )
        loop, _, lookup = make_loop(ScriptedLLM(action))

        outcome = await loop.run(ThreadState(thread_id="T1"))

        assert outcome.reason == "terminal"
        assert lookup.invocations == 0


class TestMessagePosting:
    @pytest.mark.asyncio
    async def test_posted_message_is_added_to_history(self):
        llm = ScriptedLLM(
            propose("post_message", text="#header: Hello\n*world*"),
            propose("finish_request"),
        )
        loop, sent, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "terminal"
        assert len(sent) == 1
        assert sent[0].text == "#header: Hello\n*world*"
        assert state.messages[0].text == "Hello world"
        assert state.messages[0].is_user is False
        assert state.sent_message_ids == {"msg-1"}

    @pytest.mark.asyncio
    async def test_implicit_completion_after_post_on_second_iteration(self):
        llm = ScriptedLLM(
            propose("lookup", query="facts"),
            propose("post_message", text="Here you go"),
            propose("lookup", query="never reached"),
        )
        loop, _, lookup = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "implicit_completion"
        assert outcome.iterations == 2
        assert llm.calls == 2
        assert lookup.invocations == 1
        forced = list(state.ledger.values())[-1]
        assert forced.tool_name == "finish_request"
        assert forced.result["summary"] == "Auto-completed after message was posted"

    @pytest.mark.asyncio
    async def test_post_on_first_iteration_waits_one_more_turn(self):
        llm = ScriptedLLM(
            propose("post_message", text="Hi"),
            propose("lookup", query="extra"),
        )
        loop, _, lookup = make_loop(llm)

        outcome = await loop.run(ThreadState(thread_id="T1"))

        assert outcome.reason == "implicit_completion"
        assert outcome.iterations == 2
        assert lookup.invocations == 1

    @pytest.mark.asyncio
    async def test_envelope_arguments_are_unwrapped(self):
        envelope = {
            "tool": "post_message",
            "parameters": {"text": "hi"},
            "reasoning": "x",
        }
        llm = ScriptedLLM(
            NextAction(tool_calls=[ToolCall(tool="post_message", parameters=envelope)]),
            propose("finish_request"),
        )
        loop, sent, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "terminal"
        assert [m.text for m in sent] == ["hi"]
        record = list(state.ledger.values())[0]
        assert record.tool_name == "post_message"
        assert record.arguments == {"text": "hi", "reasoning": "x"}
        assert state.messages[0].text == "hi"

    @pytest.mark.asyncio
    async def test_repeated_post_is_not_added_to_history_twice(self):
        llm = ScriptedLLM(
            propose("post_message", text="hi"),
            propose("post_message", text="hi"),
            propose("lookup", query="after"),
        )
        loop, sent, lookup = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert [m.text for m in sent] == ["hi"]
        assistant_turns = [m.text for m in state.messages if not m.is_user and not m.is_system_note]
        assert assistant_turns == ["hi"]
        # the first post still counts, so the second iteration completes the run
        assert outcome.reason == "implicit_completion"
        assert outcome.iterations == 2
        assert lookup.invocations == 0

    @pytest.mark.asyncio
    async def test_repeated_post_alone_does_not_trigger_completion(self):
        state = ThreadState(thread_id="T1")
        first = ScriptedLLM(propose("post_message", text="hi"), propose("finish_request"))
        loop, sent, _ = make_loop(first)
        await loop.run(state)

        loop.llm = ScriptedLLM(
            propose("post_message", text="hi"),
            propose("lookup", query="a"),
            propose("finish_request", summary="second"),
        )
        outcome = await loop.run(state)

        assert len(sent) == 1
        assert outcome.reason == "terminal"
        assert outcome.iterations == 3
        assert [m.text for m in state.messages] == ["hi"]

    @pytest.mark.asyncio
    async def test_call_reasoning_is_merged_into_arguments(self):
        llm = ScriptedLLM(propose("finish_request", reasoning="all done", summary="ok"))
        loop, _, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.result["reasoning"] == "all done"


class TestErrorRecovery:
    @pytest.mark.asyncio
    async def test_tool_failure_recovers_with_terminal_call(self):
        llm = ScriptedLLM(propose("explode"), propose("finish_request", summary="gave up"))
        loop, _, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "terminal"
        assert outcome.result["summary"] == "gave up"
        assert llm.calls == 2

        records = list(state.ledger.values())
        assert records[0].tool_name == "explode"
        assert records[0].error == {"message": "boom", "kind": "RuntimeError"}
        assert records[1].tool_name == ERROR_PSEUDO_TOOL
        assert records[1].error["kind"] == "ToolExecutionError"
        assert records[1].arguments == {"iteration": 1, "tool": "explode"}
        assert state.get_metadata("last_error")["kind"] == "ToolExecutionError"
        assert any(m.is_system_note and "explode" in m.text for m in state.messages)

    @pytest.mark.asyncio
    async def test_recovery_stops_after_non_terminal_action(self):
        llm = ScriptedLLM(
            propose("explode"),
            propose("lookup", query="fallback"),
            propose("lookup", query="never reached"),
        )
        loop, _, lookup = make_loop(llm)

        outcome = await loop.run(ThreadState(thread_id="T1"))

        assert outcome.reason == "recovered"
        assert outcome.state == LoopState.COMPLETED
        assert llm.calls == 2
        assert lookup.invocations == 1

    @pytest.mark.asyncio
    async def test_failure_on_later_iteration_consults_model_once_more(self):
        llm = ScriptedLLM(
            propose("lookup", query="a"),
            propose("lookup", query="b"),
            propose("explode"),
            NextAction(),
        )
        loop, _, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        with pytest.raises(RecoveryFailedError):
            await loop.run(state)

        assert llm.calls == 4
        errors = [r for r in state.ledger.values() if r.tool_name == ERROR_PSEUDO_TOOL]
        assert len(errors) == 1
        assert errors[0].arguments["iteration"] == 3

    @pytest.mark.asyncio
    async def test_recovery_action_failure_raises(self):
        llm = ScriptedLLM(propose("explode"), propose("explode", attempt=2))
        loop, _, _ = make_loop(llm)

        with pytest.raises(RecoveryFailedError) as exc_info:
            await loop.run(ThreadState(thread_id="T1"))

        assert llm.calls == 2
        assert "explode" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unknown_tool_goes_to_recovery(self):
        llm = ScriptedLLM(propose("teleport"), propose("finish_request"))
        loop, _, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "terminal"
        records = list(state.ledger.values())
        assert records[0].error["kind"] == "ToolNotFoundError"
        assert records[1].error["kind"] == "ToolNotFoundError"

    @pytest.mark.asyncio
    async def test_model_failure_goes_to_recovery(self):
        llm = ScriptedLLM(ConnectionError("model offline"), propose("finish_request"))
        loop, _, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "terminal"
        error = list(state.ledger.values())[0]
        assert error.tool_name == ERROR_PSEUDO_TOOL
        assert error.error == {"message": "model offline", "kind": "ConnectionError"}

    @pytest.mark.asyncio
    async def test_model_failure_during_recovery_raises(self):
        llm = ScriptedLLM(propose("explode"), ConnectionError("still offline"))
        loop, _, _ = make_loop(llm)

        with pytest.raises(RecoveryFailedError) as exc_info:
            await loop.run(ThreadState(thread_id="T1"))

        assert isinstance(exc_info.value.cause, ConnectionError)

    @pytest.mark.asyncio
    async def test_malformed_arguments_go_to_recovery(self):
        action = NextAction(tool_calls=[ToolCall(tool="lookup", parameters="{not json")])
        llm = ScriptedLLM(action, propose("finish_request"))
        loop, _, lookup = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcome = await loop.run(state)

        assert outcome.reason == "terminal"
        assert lookup.invocations == 0
        error = list(state.ledger.values())[0]
        assert error.error["kind"] == "MalformedArgumentsError"


class SlowLLM(LLMClient):
    def __init__(self):
        self.active = 0
        self.max_active = 0

    async def next_action(self, state, tools, **kwargs):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return propose("finish_request", summary=state.thread_id)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_runs_on_same_thread_are_serialized(self):
        llm = SlowLLM()
        loop, _, _ = make_loop(llm)
        state = ThreadState(thread_id="T1")

        outcomes = await asyncio.gather(loop.run(state), loop.run(state))

        assert llm.max_active == 1
        assert all(o.reason == "terminal" for o in outcomes)

    @pytest.mark.asyncio
    async def test_runs_on_different_threads_overlap(self):
        llm = SlowLLM()
        loop, _, _ = make_loop(llm)

        await asyncio.gather(
            loop.run(ThreadState(thread_id="T1")),
            loop.run(ThreadState(thread_id="T2")),
        )

        assert llm.max_active == 2


class TestLoopHooks:
    @pytest.mark.asyncio
    async def test_forced_completion_is_flagged(self):
        loop, _, _ = make_loop(AlwaysLookupLLM(), max_iterations=2)
        calls = []

        @loop.hook("after_tool_call")
        async def capture(event):
            calls.append((event.tool_name, event.forced))

        await loop.run(ThreadState(thread_id="T1"))

        assert calls == [
            ("lookup", False),
            ("lookup", False),
            ("finish_request", True),
        ]

    @pytest.mark.asyncio
    async def test_ledger_hit_is_reported_as_not_executed(self):
        loop, _, _ = make_loop(ScriptedLLM(propose("lookup", query="same")), max_iterations=2)
        executed = []

        @loop.hook("after_tool_call")
        async def capture(event):
            executed.append((event.tool_name, event.executed))

        await loop.run(ThreadState(thread_id="T1"))

        assert executed == [
            ("lookup", True),
            ("lookup", False),
            ("finish_request", True),
        ]

    @pytest.mark.asyncio
    async def test_recovery_hook_reports_outcome(self):
        llm = ScriptedLLM(propose("explode"), propose("finish_request"))
        loop, _, _ = make_loop(llm)
        events = []

        @loop.hook("on_recovery")
        async def capture(event):
            events.append(event)

        await loop.run(ThreadState(thread_id="T1"))

        assert len(events) == 1
        assert events[0].succeeded is True
        assert str(events[0].error).startswith("Tool 'explode' failed")


class TestSyncRun:
    def test_run_sync(self):
        loop, _, _ = make_loop(ScriptedLLM(propose("finish_request")))
        outcome = loop.run_sync(ThreadState(thread_id="T1"))
        assert outcome.reason == "terminal"
