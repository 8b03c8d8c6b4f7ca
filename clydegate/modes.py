"""Permission modes per conversation scope.

- approval: every tool call needs a human click
- bypass: every tool call runs without asking
- auto: tool calls run unless the danger classifier flags them
"""
import enum
import logging
import re

from clydegate.audit import AuditTrail
from clydegate.scope import ScopeContext

logger = logging.getLogger(__name__)


class PermissionMode(enum.Enum):
    APPROVAL = "approval"
    BYPASS = "bypass"
    AUTO = "auto"


_ON = r"(on|enable|enabled|true|1)"
_OFF = r"(off|disable|disabled|false|0)"

# Turning a mode "off" never escalates to auto.
_COMMANDS = [
    (re.compile(r"^auto\s+%s$" % _ON), PermissionMode.AUTO),
    (re.compile(r"^auto\s+%s$" % _OFF), PermissionMode.APPROVAL),
    (re.compile(r"^bypass\s+%s$" % _ON), PermissionMode.BYPASS),
    (re.compile(r"^bypass\s+%s$" % _OFF), PermissionMode.APPROVAL),
    (re.compile(r"^approval\s+%s$" % _ON), PermissionMode.APPROVAL),
    (re.compile(r"^approval\s+%s$" % _OFF), PermissionMode.BYPASS),
]

_STATUS_QUERY = re.compile(r"^(mode|bypass|approval|auto)(\s+status)?(\?)?$")


def parse_command(text: str) -> PermissionMode | None:
    """Return the mode a command phrase selects, or None for ordinary text."""
    trimmed = (text or "").strip().lower()
    for pattern, mode in _COMMANDS:
        if pattern.match(trimmed):
            return mode
    return None


def is_status_query(text: str) -> bool:
    return bool(_STATUS_QUERY.match((text or "").strip().lower()))


def format_status_message(mode: PermissionMode, context: str) -> str:
    if mode is PermissionMode.BYPASS:
        return ("🔓 *Bypass mode* for %s\n\nAll tools executed without approval.\n"
                "Use `approval on` or `auto on` to change." % context)
    if mode is PermissionMode.AUTO:
        return ("🤖 *Auto mode* for %s\n\nTools executed automatically, dangerous operations blocked.\n"
                "Use `approval on` or `bypass on` to change." % context)
    return ("🔐 *Approval mode* for %s\n\nAll tool executions require approval.\n"
            "Use `auto on` or `bypass on` to change." % context)


def coerce_mode(value) -> PermissionMode:
    """Normalize a stored value; legacy snapshots stored a bypass boolean."""
    if isinstance(value, PermissionMode):
        return value
    if isinstance(value, bool):
        return PermissionMode.BYPASS if value else PermissionMode.APPROVAL
    if isinstance(value, str):
        try:
            return PermissionMode(value.lower())
        except ValueError:
            pass
    raise ValueError("Unknown permission mode: %r" % (value,))


class PermissionModeStore:
    """Owns the scope key -> mode map. Absent entries mean approval."""

    def __init__(self, audit: AuditTrail | None = None):
        self._modes: dict[str, PermissionMode] = {}
        self._audit = audit

    def set_mode(self, ctx: ScopeContext, mode: PermissionMode):
        key = ctx.thread_key or ctx.channel_key
        self._modes[key] = mode
        logger.info("Permission mode changed: %s -> %s (by %s)", key, mode.value, ctx.user_id)
        if self._audit:
            self._audit.record("mode_change", scope=key, source=str(ctx.user_id or ""),
                               details=mode.value, mode=mode.value)

    def clear_mode(self, ctx: ScopeContext) -> bool:
        key = ctx.thread_key or ctx.channel_key
        removed = self._modes.pop(key, None)
        if removed is not None:
            logger.info("Permission mode cleared: %s", key)
        return removed is not None

    def get_mode(self, ctx: ScopeContext) -> PermissionMode:
        thread_key = ctx.thread_key
        if thread_key and thread_key in self._modes:
            return self._modes[thread_key]
        return self._modes.get(ctx.channel_key, PermissionMode.APPROVAL)

    def snapshot(self) -> dict[str, str]:
        return {key: mode.value for key, mode in self._modes.items()}

    def restore(self, settings: dict):
        restored = 0
        for key, value in settings.items():
            try:
                self._modes[key] = coerce_mode(value)
            except ValueError as e:
                logger.warning("Skipping mode for %s: %s", key, e)
                continue
            restored += 1
        logger.info("Restored %d mode settings", restored)
