"""Tests for the approval coordinator."""

from __future__ import annotations

import asyncio

import pytest

from clydegate.approval import (
    ABORTED,
    DENIED_BY_USER,
    TIMED_OUT,
    TRANSPORT_ERROR,
    ApprovalCoordinator,
    ApprovalTicket,
    Resolution,
    new_ticket_id,
    render_blocked,
    render_outcome,
    render_request,
)
from clydegate.mailbox import ResolutionMailbox
from clydegate.scope import ScopeContext
from clydegate.transport import APPROVE_ACTION, DENY_ACTION

from conftest import FakeTransport

CTX = ScopeContext("G100", "7", "alice")
BASH = {"command": "ls -la"}


async def _wait_for_ticket(coordinator, count=1):
    for _ in range(500):
        if len(coordinator.outstanding) >= count:
            return coordinator.outstanding
        await asyncio.sleep(0.001)
    raise AssertionError("ticket never opened")


class TestTicketRendering:
    def test_ticket_id_shape(self):
        tid = new_ticket_id()
        assert tid.startswith("approval_")
        assert tid != new_ticket_id()

    def test_request_has_approve_and_deny(self):
        ticket = ApprovalTicket(id="t1", tool_name="Bash", tool_input=BASH, scope=CTX)
        note = render_request(ticket)
        assert "Bash" in note.text and "ls -la" in note.text
        assert [(a.action_id, a.value) for a in note.actions] == [(APPROVE_ACTION, "t1"), (DENY_ACTION, "t1")]

    def test_outcome_has_no_actions(self):
        ticket = ApprovalTicket(id="t1", tool_name="Bash", tool_input=BASH, scope=CTX)
        note = render_outcome(ticket, Resolution.allow(BASH, decided_by="bob"))
        assert note.actions == ()
        assert "Approved by bob" in note.text
        assert "Expired" in render_outcome(ticket, Resolution.deny(TIMED_OUT, "timeout")).text


class TestRequestApproval:
    @pytest.mark.asyncio
    async def test_approve(self, coordinator, transport):
        task = asyncio.create_task(coordinator.request_approval(CTX, "Bash", BASH))
        (tid,) = await _wait_for_ticket(coordinator)
        assert coordinator.resolve(tid, True, user="bob")
        res = await task

        assert res.allowed
        assert res.updated_input == BASH
        assert res.decided_by == "bob"
        channel, thread, note = transport.posts[0]
        assert (channel, thread) == ("G100", "7")
        assert len(transport.updates) == 1
        assert "Approved" in transport.updates[0][1].text
        assert coordinator.outstanding == []

    @pytest.mark.asyncio
    async def test_deny_default_reason(self, coordinator):
        task = asyncio.create_task(coordinator.request_approval(CTX, "Bash", BASH))
        (tid,) = await _wait_for_ticket(coordinator)
        coordinator.resolve(tid, False)
        res = await task
        assert not res.allowed
        assert res.message == DENIED_BY_USER

    @pytest.mark.asyncio
    async def test_deny_with_reason(self, coordinator):
        task = asyncio.create_task(coordinator.request_approval(CTX, "Bash", BASH))
        (tid,) = await _wait_for_ticket(coordinator)
        coordinator.resolve(tid, False, reason="not on main")
        assert (await task).message == "not on main"

    @pytest.mark.asyncio
    async def test_edited_input_replaces_original(self, coordinator):
        task = asyncio.create_task(coordinator.request_approval(CTX, "Bash", BASH))
        (tid,) = await _wait_for_ticket(coordinator)
        coordinator.resolve(tid, True, edited_input={"command": "ls"})
        assert (await task).updated_input == {"command": "ls"}

    @pytest.mark.asyncio
    async def test_timeout(self, coordinator, transport, mailbox):
        res = await coordinator.request_approval(CTX, "Bash", BASH, timeout=0)
        assert not res.allowed
        assert res.message == TIMED_OUT
        assert "Expired" in transport.updates[0][1].text
        assert mailbox.pending() == []

    @pytest.mark.asyncio
    async def test_cancel(self, coordinator, transport):
        cancel = asyncio.Event()
        task = asyncio.create_task(coordinator.request_approval(CTX, "Bash", BASH, cancel=cancel))
        await _wait_for_ticket(coordinator)
        cancel.set()
        res = await asyncio.wait_for(task, timeout=2)
        assert not res.allowed
        assert res.message == ABORTED
        assert len(transport.updates) == 1

    @pytest.mark.asyncio
    async def test_already_cancelled(self, coordinator):
        cancel = asyncio.Event()
        cancel.set()
        res = await coordinator.request_approval(CTX, "Bash", BASH, cancel=cancel)
        assert res.message == ABORTED

    @pytest.mark.asyncio
    async def test_post_failure_denies_without_retry(self, mailbox, audit):
        transport = FakeTransport(fail_post=True)
        coordinator = ApprovalCoordinator(transport, mailbox, timeout=5, poll_interval=0.01, audit=audit)
        res = await coordinator.request_approval(CTX, "Bash", BASH)
        assert not res.allowed
        assert res.message == TRANSPORT_ERROR
        assert transport.updates == []
        assert mailbox.pending() == []
        assert coordinator.outstanding == []

    @pytest.mark.asyncio
    async def test_update_failure_still_settles(self, mailbox):
        transport = FakeTransport(fail_update=True)
        coordinator = ApprovalCoordinator(transport, mailbox, timeout=0, poll_interval=0.01)
        res = await coordinator.request_approval(CTX, "Bash", BASH)
        assert res.message == TIMED_OUT

    @pytest.mark.asyncio
    async def test_second_resolution_is_refused(self, coordinator):
        task = asyncio.create_task(coordinator.request_approval(CTX, "Bash", BASH))
        (tid,) = await _wait_for_ticket(coordinator)
        assert coordinator.resolve(tid, True, user="bob")
        assert not coordinator.resolve(tid, False, user="eve")
        res = await task
        assert res.allowed
        assert not coordinator.resolve(tid, False)

    @pytest.mark.asyncio
    async def test_unknown_ticket_is_refused(self, coordinator):
        assert not coordinator.resolve("approval_0_missing", True)

    @pytest.mark.asyncio
    async def test_malformed_record_is_ignored(self, coordinator, mailbox):
        task = asyncio.create_task(coordinator.request_approval(CTX, "Bash", BASH))
        (tid,) = await _wait_for_ticket(coordinator)
        (mailbox.directory / ("%s.json" % tid)).write_text("garbage")
        await asyncio.sleep(0.05)
        assert not task.done()
        assert coordinator.resolve(tid, True)
        assert (await task).allowed

    @pytest.mark.asyncio
    async def test_concurrent_tickets_are_independent(self, coordinator, transport):
        first = asyncio.create_task(coordinator.request_approval(CTX, "Bash", {"command": "one"}))
        second = asyncio.create_task(coordinator.request_approval(CTX, "Bash", {"command": "two"}))
        await _wait_for_ticket(coordinator, 2)
        ids = {note.actions[0].value: note.text for _, _, note in transport.posts}
        one = next(t for t, text in ids.items() if '"one"' in text)
        two = next(t for t, text in ids.items() if '"two"' in text)
        coordinator.resolve(two, False)
        coordinator.resolve(one, True)
        assert (await first).allowed
        assert not (await second).allowed

    @pytest.mark.asyncio
    async def test_task_cancellation_closes_mailbox(self, coordinator, mailbox):
        task = asyncio.create_task(coordinator.request_approval(CTX, "Bash", BASH))
        (tid,) = await _wait_for_ticket(coordinator)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not mailbox.is_open(tid)
        assert coordinator.outstanding == []

    @pytest.mark.asyncio
    async def test_decisions_are_audited(self, coordinator, audit):
        await coordinator.request_approval(CTX, "Bash", BASH, timeout=0)
        entry = audit.read()[-1]
        assert entry["action"] == "deny"
        assert entry["source"] == "timeout"
        assert entry["command"] == "ls -la"
        assert entry["scope"] == "G100-7"


class TestCheckAuto:
    @pytest.mark.asyncio
    async def test_safe_is_silent(self, coordinator, transport):
        res = await coordinator.check_auto(CTX, "Bash", BASH, "/work")
        assert res.allowed
        assert res.updated_input == BASH
        assert transport.posts == []

    @pytest.mark.asyncio
    async def test_dangerous_is_blocked_with_notice(self, coordinator, transport):
        res = await coordinator.check_auto(CTX, "Bash", {"command": "git push --force"}, "/work")
        assert not res.allowed
        assert "Dangerous command" in res.message
        assert len(transport.posts) == 1
        assert transport.posts[0][2].actions == ()
        assert coordinator.outstanding == []

    @pytest.mark.asyncio
    async def test_write_outside_directory(self, coordinator):
        res = await coordinator.check_auto(CTX, "Write", {"file_path": "/etc/hosts"}, "/work")
        assert not res.allowed
        assert "outside working directory" in res.message

    @pytest.mark.asyncio
    async def test_block_notice_failure_still_denies(self, mailbox):
        coordinator = ApprovalCoordinator(FakeTransport(fail_post=True), mailbox)
        res = await coordinator.check_auto(CTX, "Bash", {"command": "sudo ls"})
        assert not res.allowed


class TestResolutionChannelFailures:
    @pytest.mark.asyncio
    async def test_unusable_directory_denies(self, tmp_path, transport, audit):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        coordinator = ApprovalCoordinator(transport, ResolutionMailbox(blocker), timeout=0, poll_interval=0.01,
                                          audit=audit)
        res = await coordinator.request_approval(CTX, "Bash", BASH)
        assert not res.allowed
        assert res.message == TRANSPORT_ERROR
        assert res.decided_by == "error"
        assert transport.posts == []
        assert coordinator.outstanding == []
        assert audit.read()[-1]["action"] == "deny"

    @pytest.mark.asyncio
    async def test_read_errors_keep_waiting(self, coordinator, mailbox, monkeypatch):
        calls = []
        collect = mailbox.collect

        def flaky_collect(ticket_id):
            calls.append(ticket_id)
            if len(calls) <= 3:
                raise PermissionError("permission denied")
            return collect(ticket_id)

        monkeypatch.setattr(mailbox, "collect", flaky_collect)
        task = asyncio.create_task(coordinator.request_approval(CTX, "Bash", BASH))
        (tid,) = await _wait_for_ticket(coordinator)
        assert coordinator.resolve(tid, True, user="bob")
        res = await asyncio.wait_for(task, timeout=2)
        assert res.allowed
        assert len(calls) > 3

    def test_deposit_error_is_refused(self, coordinator, mailbox, monkeypatch):
        def broken_deposit(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(mailbox, "deposit", broken_deposit)
        assert not coordinator.resolve("approval_1_abc", True)


class TestMarkdownSafety:
    def test_fenced_content_stays_inside_one_block(self):
        ticket = ApprovalTicket(id="t1", tool_name="Write", scope=CTX,
                                tool_input={"file_path": "README.md", "content": "```py\nx = 1\n```"})
        text = render_request(ticket).text
        assert text.count("```") == 2
        assert "x = 1" in text

    def test_request_has_no_bare_id_mention(self):
        ticket = ApprovalTicket(id="t1", tool_name="Bash", tool_input=BASH, scope=ScopeContext("G1", user_id="12345"))
        assert "@12345" not in render_request(ticket).text

    def test_decider_name_is_escaped(self):
        ticket = ApprovalTicket(id="t1", tool_name="Bash", tool_input=BASH, scope=CTX)
        text = render_outcome(ticket, Resolution.deny(DENIED_BY_USER, decided_by="some_user")).text
        assert "Denied by some\\_user" in text

    def test_block_reason_is_escaped(self):
        text = render_blocked("Write", {"file_path": "/etc/my_hosts"},
                              'File path "/etc/my_hosts" is outside working directory "/work"').text
        assert "Reason: File path \"/etc/my\\_hosts\"" in text
