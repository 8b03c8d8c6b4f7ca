"""Conversation scope keys.

A scope is the conversation a message belongs to. Threads are shared by every
participant, so thread keys never include the user. A bare direct-message
channel is per-user, so DM keys do.
"""
from dataclasses import dataclass

DM_PREFIX = "D"


def resolve_scope_key(channel_id: str, thread_id: str | None = None,
                      user_id: str | None = None, dm_prefix: str = DM_PREFIX) -> str:
    if thread_id:
        return "%s-%s" % (channel_id, thread_id)
    if user_id and channel_id.startswith(dm_prefix):
        return "%s-%s" % (channel_id, user_id)
    return channel_id


def session_key(user_id: str, channel_id: str, thread_id: str | None = None) -> str:
    return "%s-%s-%s" % (user_id, channel_id, thread_id or "direct")


@dataclass(frozen=True)
class ScopeContext:
    """Where a message came from: channel, optional thread, sender."""
    channel_id: str
    thread_id: str | None = None
    user_id: str | None = None

    @property
    def is_direct(self) -> bool:
        return self.channel_id.startswith(DM_PREFIX)

    @property
    def scope_key(self) -> str:
        return resolve_scope_key(self.channel_id, self.thread_id, self.user_id)

    @property
    def channel_key(self) -> str:
        """Key of the enclosing channel (or DM pairing), ignoring any thread."""
        return resolve_scope_key(self.channel_id, None, self.user_id)

    @property
    def thread_key(self) -> str | None:
        if not self.thread_id:
            return None
        return resolve_scope_key(self.channel_id, self.thread_id)

    @property
    def session_key(self) -> str:
        return session_key(self.user_id or "", self.channel_id, self.thread_id)

    def label(self) -> str:
        """Short human description used in status messages."""
        if self.thread_id:
            return "this thread"
        if self.is_direct:
            return "this DM"
        return "this channel"
