"""Durable snapshots of sessions, working directories and permission modes.

The canonical snapshot is ``sessions.json``; each periodic tick also leaves a
dated copy ``sessions-YYYY-MM-DDTHH-MM.json``. Dated copies are never
overwritten and the oldest are pruned beyond ``history_limit`` (48 = 24h at
the default 30 minute cadence).
"""
import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from clydegate.sessions import Session

logger = logging.getLogger(__name__)

BACKUP_VERSION = 2
HISTORY_LIMIT = 48
CANONICAL_NAME = "sessions.json"
HISTORY_PREFIX = "sessions-"


@dataclass
class BackupSnapshot:
    sessions: list[Session]
    working_directories: dict[str, str]
    permission_modes: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = BACKUP_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessions": [s.to_dict() for s in self.sessions],
            "workingDirectories": dict(self.working_directories),
            "permissionModes": dict(self.permission_modes),
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupSnapshot":
        if not isinstance(data, dict) or not isinstance(data.get("timestamp"), str):
            raise ValueError("snapshot must be an object with a string timestamp")
        sessions = data.get("sessions", [])
        if not isinstance(sessions, list) or not all(isinstance(s, dict) for s in sessions):
            raise ValueError("snapshot sessions must be a list of objects")
        timestamp = datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00"))
        return cls(
            sessions=[Session.from_dict(s) for s in sessions],
            working_directories=dict(data.get("workingDirectories", {})),
            # v1 backups carry no modes
            permission_modes=dict(data.get("permissionModes", {})),
            timestamp=timestamp,
            version=int(data.get("version", 1)),
        )


class BackupManager:
    def __init__(self, directory, history_limit: int = HISTORY_LIMIT):
        self.directory = Path(directory)
        self.history_limit = history_limit
        self.canonical = self.directory / CANONICAL_NAME
        self._task: asyncio.Task | None = None

    def snapshot(self, sessions: dict[str, Session], working_dirs: dict[str, str],
                 modes: dict[str, Any] | None = None) -> BackupSnapshot:
        return BackupSnapshot(
            sessions=list(sessions.values()),
            working_directories=dict(working_dirs),
            permission_modes=dict(modes or {}),
        )

    def write_durable(self, snapshot: BackupSnapshot, history: bool = False) -> bool:
        """Atomically replace the canonical snapshot. Returns False on I/O failure."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(snapshot.to_dict(), indent=2)
            tmp = self.canonical.with_name(CANONICAL_NAME + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.canonical)
        except OSError as e:
            logger.error("Failed to save session backup: %s", e)
            return False

        logger.info("Session backup saved (%d sessions, %d working dirs) to %s",
                    len(snapshot.sessions), len(snapshot.working_directories), self.canonical)
        if history:
            self._write_history(snapshot, payload)
        return True

    def _write_history(self, snapshot: BackupSnapshot, payload: str):
        stamp = snapshot.timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M")
        path = self.directory / ("%s%s.json" % (HISTORY_PREFIX, stamp))
        try:
            # "x" keeps an existing copy from the same minute
            with open(path, "x", encoding="utf-8") as f:
                f.write(payload)
        except FileExistsError:
            return
        except OSError as e:
            logger.warning("Failed to create timestamped backup: %s", e)
            return
        logger.debug("Created timestamped backup %s", path)
        self._prune_history()

    def history_files(self) -> list[Path]:
        """Dated copies, newest first."""
        if not self.directory.exists():
            return []
        files = [p for p in self.directory.glob(HISTORY_PREFIX + "*.json")]
        return sorted(files, key=lambda p: p.name, reverse=True)

    def _prune_history(self):
        for path in self.history_files()[self.history_limit:]:
            try:
                path.unlink()
                logger.debug("Deleted old backup %s", path.name)
            except OSError as e:
                logger.warning("Failed to delete old backup %s: %s", path.name, e)

    def read_durable(self, path=None) -> BackupSnapshot | None:
        path = Path(path) if path else self.canonical
        if not path.exists():
            logger.info("No backup file found at %s", path)
            return None
        try:
            snapshot = BackupSnapshot.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Failed to load session backup %s: %s", path, e)
            return None
        logger.info("Session backup loaded (%d sessions, %d working dirs, from %s)",
                    len(snapshot.sessions), len(snapshot.working_directories), snapshot.timestamp.isoformat())
        return snapshot

    def list_backups(self, limit: int = 10) -> list[dict[str, Any]]:
        backups = []
        candidates = ([self.canonical] if self.canonical.exists() else []) + self.history_files()
        for path in candidates[:limit]:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                backups.append({
                    "file": path.name,
                    "timestamp": data.get("timestamp", ""),
                    "sessionCount": len(data.get("sessions", [])),
                })
            except (OSError, ValueError) as e:
                logger.debug("Skipping unreadable backup %s: %s", path.name, e)
        return backups

    def restore_into(self, snapshot: BackupSnapshot, sessions, workdirs, modes=None):
        """Merge a snapshot into the live stores without dropping newer live state."""
        sessions.restore({s.key: s for s in snapshot.sessions})
        workdirs.restore(snapshot.working_directories)
        if modes is not None and snapshot.permission_modes:
            modes.restore(snapshot.permission_modes)

    def save_now(self, get_sessions: Callable, get_working_dirs: Callable,
                 get_modes: Callable | None = None, history: bool = False) -> bool:
        snap = self.snapshot(get_sessions(), get_working_dirs(), get_modes() if get_modes else None)
        return self.write_durable(snap, history=history)

    def start_periodic(self, get_sessions: Callable, get_working_dirs: Callable,
                       interval_minutes: float = 30, get_modes: Callable | None = None):
        """Save now, then every ``interval_minutes`` on a background task."""
        self.stop()
        self.save_now(get_sessions, get_working_dirs, get_modes)
        self._task = asyncio.create_task(
            self._periodic(get_sessions, get_working_dirs, get_modes, interval_minutes * 60))
        logger.info("Periodic backup started (every %s min)", interval_minutes)

    async def _periodic(self, get_sessions, get_working_dirs, get_modes, interval: float):
        while True:
            await asyncio.sleep(interval)
            logger.debug("Running periodic session backup")
            try:
                self.save_now(get_sessions, get_working_dirs, get_modes, history=True)
            except Exception as e:
                # retried on the next tick
                logger.error("Periodic backup failed: %s", e, exc_info=True)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stop(self):
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Periodic backup stopped")
