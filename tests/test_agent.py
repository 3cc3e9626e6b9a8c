import asyncio

import pytest

from localclaw.agent import Agent, ToolExecutor
from localclaw.agent.core import (
    CANCELLED_TOOL_RESULT,
    EMPTY_RESPONSE,
    MAX_ITERATIONS_RESPONSE,
    MAX_TOOL_ITERATIONS,
    truncate_tool_result,
)
from localclaw.agent.prompt import build_system_prompt
from localclaw.llm.client import LLMError, ToolCall
from localclaw.memory import ConversationStore, MemoryStore
from localclaw.tools import Tool, ToolRegistry, ToolResult
from tests.conftest import ScriptedLLM, build_config, reply, tool_request


def make_tool(name, handler, required=("value",)):
    return Tool(
        name=name,
        description=f"{name} test tool",
        parameters={
            "type": "object",
            "properties": {key: {"type": "string"} for key in required},
            "required": list(required),
        },
        execute=handler,
    )


def make_agent(config, llm, registry=None, memory=None):
    executor = ToolExecutor(config.tools, config.workspace_dir, registry=registry)
    return Agent(
        llm=llm,
        executor=executor,
        conversations=ConversationStore(),
        memory=memory,
        instructions="You are a test assistant.",
    )


class TestSimpleReplies:
    async def test_plain_answer_creates_three_messages(self, config, llm):
        """A reply without tool calls leaves system, user and assistant messages."""
        llm.queue(reply("4"))
        agent = make_agent(config, llm)

        result = await agent.chat("api-1", "What is 2 + 2?")

        assert result == "4"
        history = agent.conversations.get("api-1")
        assert [m.role for m in history] == ["system", "user", "assistant"]
        assert history[1].content == "What is 2 + 2?"
        assert history[2].content == "4"

    async def test_empty_content_gets_fallback_text(self, config, llm):
        """An empty final message is replaced by a fixed acknowledgement."""
        llm.queue(reply(""))
        agent = make_agent(config, llm)

        assert await agent.chat("api-1", "hello") == EMPTY_RESPONSE

    async def test_system_message_only_seeded_once(self, config, llm):
        """The second turn of a conversation reuses the existing system message."""
        llm.queue(reply("one"))
        llm.queue(reply("two"))
        agent = make_agent(config, llm)

        await agent.chat("api-1", "first")
        await agent.chat("api-1", "second")

        roles = [m.role for m in agent.conversations.get("api-1")]
        assert roles == ["system", "user", "assistant", "user", "assistant"]

    async def test_memory_context_in_system_prompt(self, config, llm):
        """Remembered entries are appended to a new conversation's system prompt."""
        memory = MemoryStore(config.memory)
        memory.set("timezone", "Europe/Rome")
        llm.queue(reply("ok"))
        agent = make_agent(config, llm, memory=memory)

        await agent.chat("api-1", "hi")

        system = agent.conversations.get("api-1")[0].content
        assert system.startswith("You are a test assistant.")
        assert "Remembered context:\n[timezone]: Europe/Rome" in system


class TestToolCalls:
    async def test_list_directory_round_trip(self, config, llm):
        """A list_directory call is recorded as assistant + tool messages before the final turn."""
        config.workspace_dir.mkdir(parents=True)
        (config.workspace_dir / "b.txt").write_text("b")
        (config.workspace_dir / "a.txt").write_text("a")

        llm.queue(tool_request(("call_1", "list_directory", '{"path": "."}')))
        llm.queue(reply("You have a.txt and b.txt"))
        agent = make_agent(config, llm)

        result = await agent.chat("api-1", "list files")

        assert result == "You have a.txt and b.txt"
        history = agent.conversations.get("api-1")
        assert [m.role for m in history] == ["system", "user", "assistant", "tool", "assistant"]
        assert history[2].tool_calls[0].name == "list_directory"
        assert history[3].tool_call_id == "call_1"
        assert history[3].content == "a.txt\nb.txt"

        # The second request carried the tool result back to the model
        assert len(llm.requests) == 2
        assert llm.requests[1][-1] == {
            "role": "tool", "content": "a.txt\nb.txt", "tool_call_id": "call_1"
        }

    async def test_results_follow_call_order(self, config, llm):
        """Tool messages are appended in the order the calls were listed."""
        executed = []

        async def record(params):
            executed.append(params["value"])
            return ToolResult.ok(f"done {params['value']}")

        registry = ToolRegistry()
        registry.register(make_tool("record", record))

        llm.queue(tool_request(
            ("c1", "record", '{"value": "first"}'),
            ("c2", "record", '{"value": "second"}'),
            ("c3", "record", '{"value": "third"}'),
        ))
        llm.queue(reply("all done"))
        agent = make_agent(config, llm, registry=registry)

        await agent.chat("api-1", "go")

        assert executed == ["first", "second", "third"]
        tool_messages = [m for m in agent.conversations.get("api-1") if m.role == "tool"]
        assert [m.tool_call_id for m in tool_messages] == ["c1", "c2", "c3"]
        assert [m.content for m in tool_messages] == ["done first", "done second", "done third"]

    async def test_long_result_is_truncated(self, config, llm):
        """A 10,000 char result keeps 4,000 chars and reports 6,000 omitted."""
        async def flood(params):
            return ToolResult.ok("x" * 10_000)

        registry = ToolRegistry()
        registry.register(make_tool("flood", flood, required=()))

        llm.queue(tool_request(("c1", "flood", "{}")))
        llm.queue(reply("that was long"))
        agent = make_agent(config, llm, registry=registry)

        await agent.chat("api-1", "flood me")

        content = agent.conversations.get("api-1")[3].content
        kept, marker = content.split("\n\n[...truncated, ")
        omitted = int(marker.split(" ")[0])
        assert len(kept) == 4000
        assert omitted == 6000
        assert len(kept) + omitted == 10_000

    async def test_raising_tool_becomes_error_text(self, config, llm):
        """A tool that raises is reported to the model instead of aborting the turn."""
        async def explode(params):
            raise RuntimeError("kaboom")

        registry = ToolRegistry()
        registry.register(make_tool("explode", explode, required=()))

        llm.queue(tool_request(("c1", "explode", "{}")))
        llm.queue(reply("sorry about that"))
        agent = make_agent(config, llm, registry=registry)

        result = await agent.chat("api-1", "try it")

        assert result == "sorry about that"
        assert agent.conversations.get("api-1")[3].content == "Tool error: kaboom"

    async def test_unknown_tool_is_reported(self, config, llm):
        """Calling a tool that doesn't exist yields an error result, not an exception."""
        llm.queue(tool_request(("c1", "teleport", "{}")))
        llm.queue(reply("can't do that"))
        agent = make_agent(config, llm)

        await agent.chat("api-1", "beam me up")

        assert agent.conversations.get("api-1")[3].content == "Unknown tool: teleport"


class TestLoopLimits:
    async def test_stops_after_max_iterations(self, config, llm):
        """A model that never stops calling tools gets exactly 10 requests."""
        async def noop(params):
            return ToolResult.ok("ok")

        registry = ToolRegistry()
        registry.register(make_tool("noop", noop, required=()))
        for i in range(MAX_TOOL_ITERATIONS + 5):
            llm.queue(tool_request((f"c{i}", "noop", "{}")))
        agent = make_agent(config, llm, registry=registry)

        result = await agent.chat("api-1", "loop forever")

        assert result == MAX_ITERATIONS_RESPONSE
        assert len(llm.requests) == MAX_TOOL_ITERATIONS

    async def test_llm_failure_becomes_reply(self, config, llm):
        """An LLM error is returned as text and the partial history is kept."""
        llm.queue(LLMError("connection refused"))
        agent = make_agent(config, llm)

        result = await agent.chat("api-1", "hello?")

        assert result == "Sorry, the LLM request failed: connection refused"
        assert [m.role for m in agent.conversations.get("api-1")] == ["system", "user"]

    async def test_failure_after_tool_keeps_progress(self, config, llm):
        """Tool messages recorded before an LLM failure stay in the history."""
        async def noop(params):
            return ToolResult.ok("ok")

        registry = ToolRegistry()
        registry.register(make_tool("noop", noop, required=()))
        llm.queue(tool_request(("c1", "noop", "{}")))
        llm.queue(LLMError("timed out"))
        agent = make_agent(config, llm, registry=registry)

        result = await agent.chat("api-1", "go")

        assert result.startswith("Sorry, the LLM request failed:")
        roles = [m.role for m in agent.conversations.get("api-1")]
        assert roles == ["system", "user", "assistant", "tool"]

    async def test_cancelled_turn_answers_every_tool_call(self, config, llm):
        """Cancelling mid-tool leaves a tool message for each requested call id."""
        started = asyncio.Event()

        async def hang(params):
            started.set()
            await asyncio.sleep(3600)
            return ToolResult.ok("never")

        registry = ToolRegistry()
        registry.register(make_tool("hang", hang, required=()))
        llm.queue(tool_request(("c1", "hang", "{}"), ("c2", "hang", "{}")))
        agent = make_agent(config, llm, registry=registry)

        turn = asyncio.create_task(agent.chat("api-1", "wait forever"))
        await started.wait()
        turn.cancel()
        with pytest.raises(asyncio.CancelledError):
            await turn

        history = agent.conversations.get("api-1")
        assert [m.role for m in history] == ["system", "user", "assistant", "tool", "tool"]
        assert [m.tool_call_id for m in history[3:]] == ["c1", "c2"]
        assert history[3].content == CANCELLED_TOOL_RESULT

        llm.queue(reply("back again"))
        assert await agent.chat("api-1", "hello?") == "back again"


class TestConcurrency:
    async def test_same_conversation_turns_are_serialized(self, config):
        """Two concurrent messages to one conversation don't interleave."""
        class SlowLLM(ScriptedLLM):
            async def chat(self, messages, tools=None):
                await asyncio.sleep(0.01)
                return await super().chat(messages, tools)

        llm = SlowLLM([reply("first reply"), reply("second reply")])
        agent = make_agent(config, llm)

        await asyncio.gather(
            agent.chat("api-1", "first"),
            agent.chat("api-1", "second"),
        )

        history = agent.conversations.get("api-1")
        assert [m.role for m in history] == ["system", "user", "assistant", "user", "assistant"]
        assert history[2].content == "first reply"
        assert history[4].content == "second reply"

    async def test_clear_conversation_starts_fresh(self, config, llm):
        """After clearing, the next message seeds a new system prompt."""
        llm.queue(reply("one"))
        llm.queue(reply("two"))
        agent = make_agent(config, llm)

        await agent.chat("api-1", "first")
        assert agent.clear_conversation("api-1") is True
        await agent.chat("api-1", "again")

        assert [m.role for m in agent.conversations.get("api-1")] == ["system", "user", "assistant"]


class TestArgumentParsing:
    @pytest.fixture
    def executor(self, config):
        return ToolExecutor(config.tools, config.workspace_dir)

    def test_valid_json_object(self, executor):
        """Well-formed arguments are parsed as-is."""
        call = ToolCall(id="c1", name="bash", arguments='{"command": "ls"}')
        assert executor.parse_arguments(call) == {"command": "ls"}

    def test_bare_string_goes_to_primary_parameter(self, executor):
        """Unparseable text is handed to the tool's first required parameter."""
        call = ToolCall(id="c1", name="bash", arguments="ls -la")
        assert executor.parse_arguments(call) == {"command": "ls -la"}

        call = ToolCall(id="c2", name="read_file", arguments="notes.md")
        assert executor.parse_arguments(call) == {"path": "notes.md"}

    def test_non_object_json_falls_back(self, executor):
        """A JSON list is not an argument map either."""
        call = ToolCall(id="c1", name="write_file", arguments='["a", "b"]')
        assert executor.parse_arguments(call) == {"path": '["a", "b"]'}

    def test_tool_without_required_parameters(self, executor):
        """list_directory has no required field; its first property is used."""
        call = ToolCall(id="c1", name="list_directory", arguments="src")
        assert executor.parse_arguments(call) == {"path": "src"}

    def test_unknown_tool_uses_input_key(self, executor):
        call = ToolCall(id="c1", name="mystery", arguments="???")
        assert executor.parse_arguments(call) == {"input": "???"}

    def test_empty_arguments(self, executor):
        call = ToolCall(id="c1", name="list_directory", arguments="")
        assert executor.parse_arguments(call) == {}


class TestTruncateHelper:
    def test_short_result_untouched(self):
        assert truncate_tool_result("short") == "short"

    def test_exact_limit_untouched(self):
        assert truncate_tool_result("y" * 4000) == "y" * 4000

    def test_marker_counts_omitted_chars(self):
        assert truncate_tool_result("z" * 4001).endswith("[...truncated, 1 chars omitted]")


class TestSystemPrompt:
    def test_names_workspace_and_host(self, config):
        prompt = build_system_prompt(config)

        assert str(config.workspace_dir) in prompt
        assert 'The host user is "tester" with home directory "/home/tester"' in prompt
        assert "code_agent" not in prompt
        assert "Remembered context" not in prompt

    def test_code_agent_lines_when_enabled(self, tmp_path):
        prompt = build_system_prompt(build_config(tmp_path, code_agent=True))

        assert "Use the code_agent tool for any coding task" in prompt
        assert 'real host path under "/home/tester"' in prompt
        assert prompt.endswith("- Always confirm before destructive operations")
