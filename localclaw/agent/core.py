"""
Agent Core
==========

The orchestration loop behind every reply, whether the message came in
over HTTP or from a messaging channel.

The agent:
1. Seeds a new conversation with the system prompt and remembered context
2. Appends the user's message
3. Asks the LLM for the next message, advertising the tools
4. Runs the requested tool calls in order and feeds the results back
5. Returns the first message that doesn't ask for tools

Agent Loop:
    User Message
         │
         ▼
    LLM Request with Tools  ◄──────────┐
         │                             │
    ┌─── Has Tool Calls? ───┐          │
    │                       │          │
    Yes                     No         │
    │                       │          │
    ▼                       ▼          │
    Execute Tools      Return Response │
    │                                  │
    ▼                                  │
    Append Results (truncated) ────────┘
          (at most MAX_TOOL_ITERATIONS requests)

Failures never escape chat(): an LLM failure becomes the reply text, a
tool failure becomes that tool's result text. Cancellation does propagate,
after a tool message is recorded for every call the turn did not finish.
"""

import asyncio

from localclaw.agent.prompt import build_system_prompt
from localclaw.agent.tools_executor import ToolExecutor
from localclaw.llm.client import LLMClient, LLMError
from localclaw.memory.conversations import ConversationStore, Message
from localclaw.memory.store import MemoryStore
from localclaw.utils.config import Config
from localclaw.utils.logger import Logger

logger = Logger("Agent")

# Hard cap on LLM requests per chat() call
MAX_TOOL_ITERATIONS = 10

# Tool output above this many characters is cut before it enters the history
MAX_TOOL_RESULT_CHARS = 4000

EMPTY_RESPONSE = "I processed the request but have no additional response."
MAX_ITERATIONS_RESPONSE = (
    "I reached the maximum number of tool iterations. Please try rephrasing your request."
)

CANCELLED_TOOL_RESULT = "Tool error: cancelled before completion"


def truncate_tool_result(result: str, limit: int = MAX_TOOL_RESULT_CHARS) -> str:
    """
    Cut a tool result to `limit` characters plus a marker.

    Example:
        truncate_tool_result("x" * 10000)
        # "xxxx...x\n\n[...truncated, 6000 chars omitted]"
    """
    if len(result) <= limit:
        return result
    return result[:limit] + f"\n\n[...truncated, {len(result) - limit} chars omitted]"


class Agent:
    """
    Runs conversations against the LLM with tool calling.

    Example:
        agent = Agent.from_config(get_config())

        reply = await agent.chat("api-42", "What's in my workspace?")
        print(reply)

        await agent.close()
    """

    def __init__(
        self,
        llm: LLMClient,
        executor: ToolExecutor,
        conversations: ConversationStore | None = None,
        memory: MemoryStore | None = None,
        instructions: str = ""
    ):
        """
        Initialize the agent.

        Args:
            llm: Chat-completion client
            executor: Runs the tools the model asks for
            conversations: History store; a private one is created if omitted
            memory: Source of the remembered context for new conversations
            instructions: Static part of the system prompt
        """
        self.llm = llm
        self.executor = executor
        self.conversations = conversations or ConversationStore()
        self.memory = memory
        self.instructions = instructions

    @classmethod
    def from_config(cls, config: Config) -> "Agent":
        """Build the agent and all its collaborators from configuration."""
        agent = cls(
            llm=LLMClient(config.llm),
            executor=ToolExecutor(config.tools, config.workspace_dir, config.host_home),
            conversations=ConversationStore(),
            memory=MemoryStore(config.memory),
            instructions=build_system_prompt(config),
        )
        logger.info(f"Agent initialized with model: {config.llm.model}")
        return agent

    def _system_message(self) -> Message:
        content = self.instructions
        context = self.memory.get_context() if self.memory else ""
        if context:
            content = f"{content}\n\n{context}" if content else context
        return Message(role="system", content=content)

    async def chat(self, conversation_id: str, text: str) -> str:
        """
        Process one user message and return the assistant's reply.

        Turns for the same conversation id run one at a time; turns for
        different ids run concurrently.

        Args:
            conversation_id: e.g. "api-<uuid>" or "whatsapp-<jid>"
            text: The user's message

        Returns:
            The reply text (never raises)
        """
        async with self.conversations.lock(conversation_id):
            return await self._run_turn(conversation_id, text)

    async def _run_turn(self, conversation_id: str, text: str) -> str:
        store = self.conversations

        if not store.exists(conversation_id):
            store.append(conversation_id, self._system_message())

        store.append(conversation_id, Message(role="user", content=text))
        logger.info(f"[{conversation_id}] User: {text[:80]}")

        tools = self.executor.get_definitions()

        for iteration in range(1, MAX_TOOL_ITERATIONS + 1):
            messages = store.to_openai_messages(conversation_id)
            logger.debug(
                f"[{conversation_id}] Iteration {iteration}, sending {len(messages)} messages"
            )

            try:
                response = await self.llm.chat(messages, tools)
            except LLMError as e:
                logger.error(f"[{conversation_id}] LLM call failed", e)
                return f"Sorry, the LLM request failed: {e}"
            except Exception as e:
                logger.error(f"[{conversation_id}] Unexpected LLM failure", e)
                return f"Sorry, the LLM request failed: {e}"

            if not response.tool_calls:
                reply = response.content or EMPTY_RESPONSE
                store.append(conversation_id, Message(role="assistant", content=reply))
                logger.info(f"[{conversation_id}] Reply ({len(reply)} chars)")
                return reply

            store.append(conversation_id, Message(
                role="assistant",
                content=response.content or "",
                tool_calls=list(response.tool_calls),
            ))

            for index, tool_call in enumerate(response.tool_calls):
                args = self.executor.parse_arguments(tool_call)
                try:
                    result = await self.executor.execute(tool_call.name, args)
                except asyncio.CancelledError:
                    # Every advertised call id still needs a tool message
                    logger.warning(f"[{conversation_id}] Turn cancelled during {tool_call.name}")
                    for pending in response.tool_calls[index:]:
                        store.append(conversation_id, Message(
                            role="tool",
                            content=CANCELLED_TOOL_RESULT,
                            tool_call_id=pending.id,
                        ))
                    raise
                except Exception as e:
                    logger.error(f"Tool {tool_call.name} raised", e)
                    result = f"Tool error: {e}"

                if len(result) > MAX_TOOL_RESULT_CHARS:
                    logger.info(
                        f"Truncating {tool_call.name} result from {len(result)} "
                        f"to {MAX_TOOL_RESULT_CHARS} chars"
                    )
                    result = truncate_tool_result(result)

                store.append(conversation_id, Message(
                    role="tool",
                    content=result,
                    tool_call_id=tool_call.id,
                ))
                logger.info(f"Tool {tool_call.name} completed ({len(result)} chars)")

        logger.warning(f"[{conversation_id}] Reached max tool iterations")
        return MAX_ITERATIONS_RESPONSE

    async def test_connection(self) -> bool:
        return await self.llm.test_connection()

    async def list_models(self) -> list[str]:
        return await self.llm.list_models()

    @property
    def model(self) -> str:
        return self.llm.model

    def clear_conversation(self, conversation_id: str) -> bool:
        """Forget a conversation's history. The next message starts fresh."""
        cleared = self.conversations.clear(conversation_id)
        if cleared:
            logger.info(f"Cleared conversation {conversation_id}")
        return cleared

    async def close(self) -> None:
        """Release tool resources (the browser) and the HTTP client."""
        await self.executor.close()
        await self.llm.close()
