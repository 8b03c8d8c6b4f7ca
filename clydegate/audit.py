"""Append-only audit trail (JSON lines) for permission decisions."""
import json
import logging
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class AuditTrail:
    """Writes one JSON object per line to ``path``."""

    def __init__(self, path):
        self.path = Path(path)

    def record(self, action: str, tool_name: str = "", tool_input: dict | None = None,
               scope: str = "", source: str = "", details: str = "", **extra):
        tool_input = tool_input or {}
        entry = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "action": action,
            "scope": scope,
            "tool": tool_name,
            "command": str(tool_input.get("command", ""))[:200] if tool_name == "Bash" else "",
            "source": source,
            "details": details[:500],
        }
        entry.update(extra)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.debug("Audit trail write failed: %s", e)

    def read(self, limit: int = 100) -> list[dict]:
        """Most recent entries, newest last."""
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries[-limit:]
