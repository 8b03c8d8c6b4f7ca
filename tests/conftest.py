"""Shared test fixtures for clydegate."""

from __future__ import annotations

from pathlib import Path

import pytest

from clydegate.approval import ApprovalCoordinator
from clydegate.audit import AuditTrail
from clydegate.mailbox import ResolutionMailbox
from clydegate.transport import MessageRef


class FakeTransport:
    """Records posts and edits instead of talking to a chat service."""

    def __init__(self, fail_post: bool = False, fail_update: bool = False):
        self.fail_post = fail_post
        self.fail_update = fail_update
        self.posts: list[tuple[str, str | None, object]] = []
        self.updates: list[tuple[MessageRef, object]] = []

    async def post_message(self, channel_id, thread_id, content):
        if self.fail_post:
            raise ConnectionError("chat service unavailable")
        self.posts.append((channel_id, thread_id, content))
        return MessageRef(channel_id=channel_id, message_id=str(len(self.posts)))

    async def update_message(self, ref, content):
        if self.fail_update:
            raise ConnectionError("chat service unavailable")
        self.updates.append((ref, content))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def mailbox(tmp_path: Path) -> ResolutionMailbox:
    return ResolutionMailbox(tmp_path / "approvals")


@pytest.fixture
def audit(tmp_path: Path) -> AuditTrail:
    return AuditTrail(tmp_path / "audit_trail.jsonl")


@pytest.fixture
def coordinator(transport, mailbox, audit) -> ApprovalCoordinator:
    return ApprovalCoordinator(transport, mailbox, timeout=5, poll_interval=0.01, audit=audit)
