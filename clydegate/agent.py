"""Claude Agent SDK adapter: permission callback and per-turn runner."""
import asyncio
import logging

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
)

from clydegate.approval import ApprovalCoordinator, Resolution
from clydegate.modes import PermissionMode, PermissionModeStore
from clydegate.scope import ScopeContext
from clydegate.sessions import SessionStore
from clydegate.workdirs import WorkingDirectoryStore

logger = logging.getLogger(__name__)


def to_sdk_result(resolution: Resolution):
    if resolution.allowed:
        return PermissionResultAllow(updated_input=resolution.updated_input)
    return PermissionResultDeny(message=resolution.message)


class PermissionBroker:
    """Routes each tool call through the gate that the scope's mode selects."""

    def __init__(self, coordinator: ApprovalCoordinator, modes: PermissionModeStore,
                 workdirs: WorkingDirectoryStore):
        self.coordinator = coordinator
        self.modes = modes
        self.workdirs = workdirs

    async def decide(self, ctx: ScopeContext, tool_name: str, tool_input: dict,
                     cancel: asyncio.Event | None = None) -> Resolution:
        mode = self.modes.get_mode(ctx)
        if mode is PermissionMode.BYPASS:
            return Resolution.allow(tool_input, decided_by="bypass")
        if mode is PermissionMode.AUTO:
            return await self.coordinator.check_auto(ctx, tool_name, tool_input, self.workdirs.get(ctx))
        return await self.coordinator.request_approval(ctx, tool_name, tool_input, cancel=cancel)

    def callback(self, ctx: ScopeContext, cancel: asyncio.Event | None = None):
        broker = self

        async def can_use_tool(tool_name, input_data, context):
            logger.info("Permission requested for tool %s in %s", tool_name, ctx.scope_key)
            resolution = await broker.decide(ctx, tool_name, input_data, cancel=cancel)
            return to_sdk_result(resolution)

        return can_use_tool


class AgentRunner:
    """Runs one prompt against a resumable Claude session for a scope."""

    def __init__(self, config, broker: PermissionBroker, sessions: SessionStore,
                 modes: PermissionModeStore, workdirs: WorkingDirectoryStore, client_factory=ClaudeSDKClient):
        self.config = config
        self.broker = broker
        self.sessions = sessions
        self.modes = modes
        self.workdirs = workdirs
        self._client_factory = client_factory

    def build_options(self, ctx: ScopeContext, resume: str | None = None,
                      cancel: asyncio.Event | None = None) -> ClaudeAgentOptions:
        opts = {}
        cwd = self.workdirs.get(ctx)
        if cwd: opts["cwd"] = cwd
        if self.config.model: opts["model"] = self.config.model
        if self.config.max_turns: opts["max_turns"] = self.config.max_turns
        if self.config.system_prompt: opts["system_prompt"] = self.config.system_prompt
        if resume: opts["resume"] = resume

        if self.modes.get_mode(ctx) is PermissionMode.BYPASS:
            opts["permission_mode"] = "bypassPermissions"
        else:
            opts["permission_mode"] = "default"
            opts["can_use_tool"] = self.broker.callback(ctx, cancel)
        logger.debug("Claude options for %s: permission_mode=%s resume=%s cwd=%s",
                     ctx.scope_key, opts["permission_mode"], resume, cwd)
        return ClaudeAgentOptions(**opts)

    async def run_turn(self, ctx: ScopeContext, prompt: str, cancel: asyncio.Event | None = None) -> str:
        session = self.sessions.get_or_create(ctx.user_id, ctx.channel_id, ctx.thread_id)
        if session.external_session_id:
            logger.debug("Resuming session %s", session.external_session_id)
        else:
            logger.debug("Starting new Claude conversation for %s", session.key)

        client = self._client_factory(self.build_options(ctx, session.external_session_id, cancel))
        watcher = None
        text_parts, tool_log = [], []
        try:
            await client.connect()
            if cancel is not None:
                watcher = asyncio.create_task(self._interrupt_on_cancel(client, cancel))
            await client.query(prompt)
            async for msg in client.receive_response():
                if isinstance(msg, SystemMessage) and msg.subtype == "init":
                    sid = msg.data.get("session_id")
                    if sid and sid != session.external_session_id:
                        self.sessions.attach_external_id(ctx.user_id, ctx.channel_id, ctx.thread_id, sid)
                        logger.info("Session initialized: %s", sid)
                elif isinstance(msg, AssistantMessage):
                    for block in msg.content:
                        if isinstance(block, TextBlock): text_parts.append(block.text)
                        elif isinstance(block, ToolUseBlock): tool_log.append(block.name)
                elif isinstance(msg, ResultMessage):
                    if msg.session_id and msg.session_id != session.external_session_id:
                        self.sessions.attach_external_id(ctx.user_id, ctx.channel_id, ctx.thread_id, msg.session_id)
        finally:
            if watcher:
                watcher.cancel()
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning("Session disconnect error for %s: %s", session.key, e)
            # refresh on every turn, allowed or denied
            self.sessions.touch(ctx.user_id, ctx.channel_id, ctx.thread_id)

        if tool_log:
            logger.info("Tools used: %s", ", ".join(tool_log))
        return "\n\n".join(text_parts) if text_parts else "No response generated."

    @staticmethod
    async def _interrupt_on_cancel(client, cancel: asyncio.Event):
        await cancel.wait()
        logger.info("Interrupting agent turn")
        try:
            await client.interrupt()
        except Exception as e:
            logger.warning("Interrupt failed: %s", e)
