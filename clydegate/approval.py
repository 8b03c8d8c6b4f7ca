"""Approval coordinator: one ticket per gated tool call.

Flow for a ticket:
1. post an approve/deny notification into the originating scope
2. poll the resolution mailbox until a record arrives, the deadline passes,
   or the caller's cancel event is set
3. settle exactly once: close the mailbox entry, edit the notification to
   show the outcome, return the Resolution

Every path returns exactly one Resolution. Posting failures deny
immediately (fail-closed) and are not retried, so the human never sees a
duplicate prompt.
"""
import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from telegram.helpers import escape_markdown

from clydegate.audit import AuditTrail
from clydegate.danger import classify
from clydegate.mailbox import MalformedRecordError, ResolutionMailbox
from clydegate.scope import ScopeContext
from clydegate.transport import APPROVE_ACTION, DENY_ACTION, Action, ChatTransport, Notification

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5 * 60
DEFAULT_POLL_INTERVAL = 0.5
MAX_INPUT_PREVIEW = 3000

DENIED_BY_USER = "Denied by user"
TIMED_OUT = "Permission request timed out"
ABORTED = "Request was aborted"
TRANSPORT_ERROR = "Error occurred while requesting permission"


@dataclass(frozen=True)
class Resolution:
    behavior: str  # "allow" | "deny"
    updated_input: dict[str, Any] | None = None
    message: str = ""
    decided_by: str = ""

    @classmethod
    def allow(cls, updated_input: dict[str, Any] | None = None, decided_by: str = "") -> "Resolution":
        return cls(behavior="allow", updated_input=updated_input, decided_by=decided_by)

    @classmethod
    def deny(cls, message: str, decided_by: str = "") -> "Resolution":
        return cls(behavior="deny", message=message, decided_by=decided_by)

    @property
    def allowed(self) -> bool:
        return self.behavior == "allow"


@dataclass
class ApprovalTicket:
    id: str
    tool_name: str
    tool_input: dict[str, Any]
    scope: ScopeContext
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def new_ticket_id() -> str:
    return "approval_%d_%s" % (int(time.time() * 1000), secrets.token_hex(5))


def format_input(tool_input: dict) -> str:
    try:
        text = json.dumps(tool_input, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = repr(tool_input)
    if len(text) > MAX_INPUT_PREVIEW:
        text = text[:MAX_INPUT_PREVIEW] + "\n..."
    # a literal fence in the input would close the code block it is shown in
    return text.replace("```", "ʼʼʼ")


def render_request(ticket: ApprovalTicket) -> Notification:
    text = (
        "🔐 *Permission Request*\n\n"
        "Claude wants to use the tool: `%s`\n\n"
        "*Tool Parameters:*\n```\n%s\n```"
    ) % (ticket.tool_name, format_input(ticket.tool_input))
    return Notification(text=text, actions=(
        Action("✅ Approve", APPROVE_ACTION, ticket.id),
        Action("❌ Deny", DENY_ACTION, ticket.id),
    ))


def render_outcome(ticket: ApprovalTicket, resolution: Resolution) -> Notification:
    if resolution.allowed:
        status, footer = "✅ Approved", "Approved by %s" % (resolution.decided_by or "user")
    elif resolution.decided_by in ("timeout", "cancelled"):
        status, footer = "⏰ Expired", resolution.message
    else:
        status, footer = "❌ Denied", "Denied by %s" % (resolution.decided_by or "user")
    text = (
        "🔐 *Permission Request* - %s\n\n"
        "Tool: `%s`\n\n"
        "*Tool Parameters:*\n```\n%s\n```\n\n"
        "%s"
    ) % (status, ticket.tool_name, format_input(ticket.tool_input), escape_markdown(footer))
    return Notification(text=text)


def render_blocked(tool_name: str, tool_input: dict, reason: str) -> Notification:
    text = (
        "⛔ *Dangerous operation blocked*\n\n"
        "Tool: `%s`\nReason: %s\n\n"
        "*Input:*\n```\n%s\n```\n\n"
        "Switch to `bypass on` if you want to allow all operations."
    ) % (tool_name, escape_markdown(reason), format_input(tool_input))
    return Notification(text=text)


class ApprovalCoordinator:
    def __init__(self, transport: ChatTransport, mailbox: ResolutionMailbox,
                 timeout: float = DEFAULT_TIMEOUT, poll_interval: float = DEFAULT_POLL_INTERVAL,
                 audit: AuditTrail | None = None):
        self.transport = transport
        self.mailbox = mailbox
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._audit = audit
        self._outstanding: dict[str, ApprovalTicket] = {}

    @property
    def outstanding(self) -> list[str]:
        return list(self._outstanding)

    def resolve(self, ticket_id: str, approved: bool, edited_input: dict | None = None,
                reason: str | None = None, user: str | None = None) -> bool:
        """Record a human decision. False if the ticket is unknown or already settled."""
        try:
            return self.mailbox.deposit(ticket_id, approved, edited_input=edited_input, reason=reason, user=user)
        except OSError as e:
            logger.error("Failed to deposit resolution for %s: %s", ticket_id, e)
            return False

    async def request_approval(self, ctx: ScopeContext, tool_name: str, tool_input: dict,
                               timeout: float | None = None,
                               cancel: asyncio.Event | None = None) -> Resolution:
        ticket = ApprovalTicket(id=new_ticket_id(), tool_name=tool_name, tool_input=tool_input, scope=ctx)
        timeout = self.timeout if timeout is None else timeout
        logger.info("Permission requested: %s for %s (ticket %s)", tool_name, ctx.scope_key, ticket.id)

        try:
            self.mailbox.open(ticket.id)
        except OSError as e:
            logger.error("Failed to open resolution channel for %s: %s", ticket.id, e)
            resolution = Resolution.deny(TRANSPORT_ERROR, decided_by="error")
            self._record(ticket, resolution)
            return resolution
        self._outstanding[ticket.id] = ticket
        try:
            try:
                ref = await self.transport.post_message(ctx.channel_id, ctx.thread_id, render_request(ticket))
            except Exception as e:
                logger.error("Failed to send permission request for %s: %s", ticket.id, e, exc_info=True)
                resolution = Resolution.deny(TRANSPORT_ERROR, decided_by="error")
                self._record(ticket, resolution)
                return resolution

            resolution = await self._wait(ticket, timeout, cancel)
        finally:
            self._outstanding.pop(ticket.id, None)
            try:
                self.mailbox.close(ticket.id)
            except OSError as e:
                logger.warning("Failed to close resolution channel for %s: %s", ticket.id, e)

        self._record(ticket, resolution)
        try:
            await self.transport.update_message(ref, render_outcome(ticket, resolution))
        except Exception as e:
            logger.error("Failed to update permission message for %s: %s", ticket.id, e)
        return resolution

    async def _wait(self, ticket: ApprovalTicket, timeout: float, cancel: asyncio.Event | None) -> Resolution:
        deadline = time.monotonic() + timeout
        polls = 0
        while True:
            if cancel is not None and cancel.is_set():
                logger.info("Permission request aborted (ticket %s)", ticket.id)
                return Resolution.deny(ABORTED, decided_by="cancelled")

            try:
                record = self.mailbox.collect(ticket.id)
            except MalformedRecordError as e:
                logger.warning("Ignoring malformed resolution for %s: %s", ticket.id, e)
                record = None
            except OSError as e:
                logger.warning("Failed to read resolution for %s: %s", ticket.id, e)
                record = None
            if record is not None:
                logger.info("Received resolution for %s (approved=%s, polls=%d)", ticket.id, record.approved, polls)
                if record.approved:
                    updated = record.edited_input if record.edited_input is not None else ticket.tool_input
                    return Resolution.allow(updated, decided_by=record.user or "user")
                return Resolution.deny(record.reason or DENIED_BY_USER, decided_by=record.user or "user")

            if time.monotonic() >= deadline:
                logger.info("Permission request timed out (ticket %s, polls=%d)", ticket.id, polls)
                return Resolution.deny(TIMED_OUT, decided_by="timeout")

            polls += 1
            if polls % 10 == 0:
                logger.debug("Still waiting for approval %s (polls=%d)", ticket.id, polls)
            await self._sleep(deadline, cancel)

    async def _sleep(self, deadline: float, cancel: asyncio.Event | None):
        delay = max(0.0, min(self.poll_interval, deadline - time.monotonic()))
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def check_auto(self, ctx: ScopeContext, tool_name: str, tool_input: dict,
                         working_directory: str | None = None) -> Resolution:
        """Auto mode: allow unless the classifier objects; never waits on a human."""
        verdict = classify(tool_name, tool_input, working_directory)
        if verdict.safe:
            logger.info("Auto mode: allowing %s", tool_name)
            return Resolution.allow(tool_input, decided_by="auto")

        logger.warning("Auto mode: blocking %s: %s", tool_name, verdict.reason)
        try:
            await self.transport.post_message(ctx.channel_id, ctx.thread_id,
                                              render_blocked(tool_name, tool_input, verdict.reason))
        except Exception as e:
            logger.error("Failed to send block notification: %s", e)
        resolution = Resolution.deny(verdict.reason, decided_by="auto")
        if self._audit:
            self._audit.record("deny", tool_name, tool_input, scope=ctx.scope_key,
                               source="auto", details=verdict.reason)
        return resolution

    def _record(self, ticket: ApprovalTicket, resolution: Resolution):
        logger.info("Ticket %s settled: %s (%s)", ticket.id, resolution.behavior, resolution.decided_by)
        if self._audit:
            self._audit.record(resolution.behavior, ticket.tool_name, ticket.tool_input,
                               scope=ticket.scope.scope_key, source=resolution.decided_by,
                               details=resolution.message, ticket=ticket.id)
