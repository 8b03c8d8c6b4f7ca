"""Durable resolution mailbox shared between processes.

The approval coordinator may live in a different process from the code that
handles button clicks, so the hand-off goes through a directory:

    <ticket>.pending   created by the coordinator while it waits
    <ticket>.json      one resolution record, deposited by the click handler

Records are never rewritten. A deposit is written to a private temp file and
hard-linked into place, so the first writer wins and readers never see a
partial record. The coordinator consumes the record and removes both files
when the ticket settles; later deposits find no marker and are refused.
"""
import json
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class MalformedRecordError(ValueError):
    """A resolution record could not be decoded."""


@dataclass(frozen=True)
class ResolutionRecord:
    approved: bool
    edited_input: dict[str, Any] | None = None
    reason: str | None = None
    user: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"approved": self.approved}
        if self.edited_input is not None:
            data["editedInput"] = self.edited_input
        if self.reason:
            data["reason"] = self.reason
        if self.user:
            data["user"] = self.user
        return data

    @classmethod
    def from_dict(cls, data) -> "ResolutionRecord":
        if not isinstance(data, dict) or not isinstance(data.get("approved"), bool):
            raise MalformedRecordError("record must be an object with a boolean 'approved'")
        edited = data.get("editedInput")
        if edited is not None and not isinstance(edited, dict):
            raise MalformedRecordError("'editedInput' must be an object")
        return cls(
            approved=data["approved"],
            edited_input=edited,
            reason=data.get("reason") or None,
            user=data.get("user") or None,
        )


class ResolutionMailbox:
    def __init__(self, directory):
        self.directory = Path(directory)

    def _ensure_dir(self):
        self.directory.mkdir(parents=True, exist_ok=True)

    def _record_path(self, ticket_id: str) -> Path:
        return self.directory / ("%s.json" % ticket_id)

    def _marker_path(self, ticket_id: str) -> Path:
        return self.directory / ("%s.pending" % ticket_id)

    def open(self, ticket_id: str):
        """Start accepting a resolution for ``ticket_id``."""
        self._ensure_dir()
        self._marker_path(ticket_id).touch()

    def is_open(self, ticket_id: str) -> bool:
        return self._marker_path(ticket_id).exists()

    def pending(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.pending"))

    def deposit(self, ticket_id: str, approved: bool, edited_input: dict | None = None,
                reason: str | None = None, user: str | None = None) -> bool:
        """Write a resolution. Returns False if the ticket is closed or already resolved."""
        if not self.is_open(ticket_id):
            logger.info("Ignoring resolution for unknown or settled ticket %s", ticket_id)
            return False
        record = ResolutionRecord(approved=approved, edited_input=edited_input, reason=reason, user=user)
        final = self._record_path(ticket_id)
        tmp = self.directory / (".%s.%s.tmp" % (ticket_id, secrets.token_hex(4)))
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(record.to_dict(), f)
            f.flush()
            os.fsync(f.fileno())
        try:
            os.link(tmp, final)
        except FileExistsError:
            logger.info("Ticket %s already has a resolution; keeping the first", ticket_id)
            return False
        finally:
            tmp.unlink(missing_ok=True)
        logger.info("Resolution deposited for %s (approved=%s, user=%s)", ticket_id, approved, user)
        return True

    def collect(self, ticket_id: str) -> ResolutionRecord | None:
        """Consume the record for ``ticket_id`` if one has arrived.

        Raises MalformedRecordError for a record that cannot be decoded; the
        bad file is removed so a corrected deposit can take its place.
        """
        path = self._record_path(ticket_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        path.unlink(missing_ok=True)
        try:
            return ResolutionRecord.from_dict(json.loads(content))
        except json.JSONDecodeError as e:
            raise MalformedRecordError("invalid JSON: %s" % e) from e

    def close(self, ticket_id: str):
        """Stop accepting resolutions and drop anything left for ``ticket_id``."""
        self._marker_path(ticket_id).unlink(missing_ok=True)
        self._record_path(ticket_id).unlink(missing_ok=True)
