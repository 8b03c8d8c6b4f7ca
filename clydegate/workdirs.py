"""Working directory per scope, set with ``/cwd``."""
import logging
from pathlib import Path

from clydegate.scope import ScopeContext

logger = logging.getLogger(__name__)


class WorkingDirectoryStore:
    def __init__(self, default: str = "", base_directory: str = ""):
        self.default = default
        self.base_directory = base_directory
        self._dirs: dict[str, str] = {}

    def resolve_path(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute() and self.base_directory:
            p = Path(self.base_directory) / p
        return p.resolve()

    def set(self, ctx: ScopeContext, path: str) -> str:
        """Set the directory for this scope. Raises ValueError if it does not exist."""
        resolved = self.resolve_path(path)
        if not resolved.is_dir():
            raise ValueError("Directory not found: %s" % resolved)
        key = ctx.thread_key or ctx.channel_key
        self._dirs[key] = str(resolved)
        logger.info("Working directory set: %s -> %s", key, resolved)
        return str(resolved)

    def get(self, ctx: ScopeContext) -> str | None:
        thread_key = ctx.thread_key
        if thread_key and thread_key in self._dirs:
            return self._dirs[thread_key]
        return self._dirs.get(ctx.channel_key) or self.default or None

    def snapshot(self) -> dict[str, str]:
        return dict(self._dirs)

    def restore(self, mapping: dict[str, str]) -> int:
        restored = 0
        for key, path in mapping.items():
            if key in self._dirs:
                continue
            self._dirs[key] = path
            restored += 1
        logger.info("Restored %d working directories", restored)
        return restored
