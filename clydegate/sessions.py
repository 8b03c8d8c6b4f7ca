"""Resumable agent sessions keyed by (user, channel, thread|direct)."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from clydegate.scope import session_key

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Session:
    user_id: str
    channel_id: str
    thread_id: str | None = None
    external_session_id: str | None = None
    is_active: bool = True
    last_activity: datetime = field(default_factory=_now)

    @property
    def key(self) -> str:
        return session_key(self.user_id, self.channel_id, self.thread_id)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "userId": self.user_id,
            "channelId": self.channel_id,
            "isActive": self.is_active,
            "lastActivity": self.last_activity.isoformat(),
        }
        if self.thread_id:
            data["threadId"] = self.thread_id
        if self.external_session_id:
            data["externalSessionId"] = self.external_session_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            user_id=data["userId"],
            channel_id=data["channelId"],
            # "threadTs"/"sessionId" are the field names older backups used
            thread_id=data.get("threadId") or data.get("threadTs"),
            external_session_id=data.get("externalSessionId") or data.get("sessionId"),
            is_active=data.get("isActive", True),
            last_activity=_parse_time(data["lastActivity"]),
        )


class SessionStore:
    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def __len__(self):
        return len(self._sessions)

    def get(self, user_id, channel_id, thread_id=None) -> Session | None:
        return self._sessions.get(session_key(user_id, channel_id, thread_id))

    def create(self, user_id, channel_id, thread_id=None) -> Session:
        session = Session(user_id=user_id, channel_id=channel_id, thread_id=thread_id)
        self._sessions[session.key] = session
        logger.info("Created session %s", session.key)
        return session

    def get_or_create(self, user_id, channel_id, thread_id=None) -> Session:
        return self.get(user_id, channel_id, thread_id) or self.create(user_id, channel_id, thread_id)

    def attach_external_id(self, user_id, channel_id, thread_id, external_id: str) -> Session:
        """Bind a resumable agent session id, creating the session if needed."""
        session = self.get_or_create(user_id, channel_id, thread_id)
        previous = session.external_session_id
        session.external_session_id = external_id
        session.is_active = True
        session.last_activity = _now()
        if previous and previous != external_id:
            logger.info("Rebound session %s: %s -> %s", session.key, previous, external_id)
        else:
            logger.info("Attached session id %s to %s", external_id, session.key)
        return session

    def remove(self, user_id, channel_id, thread_id=None) -> bool:
        removed = self._sessions.pop(session_key(user_id, channel_id, thread_id), None)
        if removed:
            logger.info("Removed session %s", removed.key)
        return removed is not None

    def touch(self, user_id, channel_id, thread_id=None) -> Session | None:
        session = self.get(user_id, channel_id, thread_id)
        if session:
            session.last_activity = _now()
        return session

    def reap(self, max_age, now: datetime | None = None) -> int:
        """Drop sessions idle longer than ``max_age`` (timedelta or hours).

        A zero or negative age disables reaping.
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(hours=max_age)
        if max_age <= timedelta(0):
            logger.debug("Session cleanup disabled (timeout set to 0)")
            return 0
        cutoff = (now or _now()) - max_age
        stale = [key for key, s in self._sessions.items() if s.last_activity < cutoff]
        for key in stale:
            del self._sessions[key]
        if stale:
            logger.info("Cleaned up %d inactive sessions (timeout: %s)", len(stale), max_age)
        return len(stale)

    def all(self) -> dict[str, Session]:
        return dict(self._sessions)

    def restore(self, sessions: dict[str, Session]) -> int:
        """Merge restored sessions; live sessions with newer activity are kept."""
        restored = 0
        for key, session in sessions.items():
            live = self._sessions.get(key)
            if live and live.last_activity >= session.last_activity:
                continue
            self._sessions[key] = session
            restored += 1
        logger.info("Restored %d sessions from backup", restored)
        return restored
