import os
from dataclasses import dataclass, field
from pathlib import Path


def _bool_env(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    telegram_token: str = ""
    allowed_user_ids: list[int] = field(default_factory=list)
    working_dir: str = ""
    base_dir: str = ""
    state_dir: str = ""
    model: str = ""
    max_turns: int = 0
    system_prompt: str = ""
    approval_timeout: float = 300.0
    poll_interval: float = 0.5
    session_timeout_hours: float = 24.0   # 0 = sessions never expire
    backup_interval_minutes: float = 30.0
    debug: bool = False

    @classmethod
    def from_env(cls):
        cfg = cls()
        cfg.telegram_token = os.environ.get("TELEGRAM_BOT_TOKEN", "")
        raw_ids = os.environ.get("ALLOWED_USER_IDS", "")
        if raw_ids:
            cfg.allowed_user_ids = [int(x.strip()) for x in raw_ids.split(",") if x.strip()]
        cfg.working_dir = os.environ.get("CLYDEGATE_WORKING_DIR", str(Path.home()))
        cfg.base_dir = os.environ.get("CLYDEGATE_BASE_DIR", "")
        cfg.state_dir = os.environ.get("CLYDEGATE_STATE_DIR", str(Path.home() / ".clydegate"))
        cfg.model = os.environ.get("CLYDEGATE_MODEL", "")
        cfg.system_prompt = os.environ.get("CLYDEGATE_SYSTEM_PROMPT", "")
        mt = os.environ.get("CLYDEGATE_MAX_TURNS", "0")
        cfg.max_turns = int(mt) if mt else 0
        cfg.approval_timeout = float(os.environ.get("CLYDEGATE_APPROVAL_TIMEOUT", "300"))
        cfg.poll_interval = float(os.environ.get("CLYDEGATE_POLL_INTERVAL", "0.5"))
        cfg.session_timeout_hours = float(os.environ.get("CLYDEGATE_SESSION_TIMEOUT_HOURS", "24"))
        cfg.backup_interval_minutes = float(os.environ.get("CLYDEGATE_BACKUP_INTERVAL_MINUTES", "30"))
        cfg.debug = _bool_env("CLYDEGATE_DEBUG")
        return cfg

    def validate(self):
        errors = []
        if not self.telegram_token: errors.append("TELEGRAM_BOT_TOKEN required")
        if self.approval_timeout < 0: errors.append("CLYDEGATE_APPROVAL_TIMEOUT must be >= 0")
        if self.poll_interval <= 0: errors.append("CLYDEGATE_POLL_INTERVAL must be > 0")
        if self.backup_interval_minutes <= 0: errors.append("CLYDEGATE_BACKUP_INTERVAL_MINUTES must be > 0")
        if self.base_dir and not Path(self.base_dir).expanduser().is_dir():
            errors.append("CLYDEGATE_BASE_DIR does not exist: %s" % self.base_dir)
        return errors

    @property
    def approvals_dir(self) -> Path:
        return Path(self.state_dir).expanduser() / "approvals"

    @property
    def backups_dir(self) -> Path:
        return Path(self.state_dir).expanduser() / "backups"

    @property
    def audit_trail_path(self) -> Path:
        return Path(self.state_dir).expanduser() / "audit_trail.jsonl"


def is_authorized(config, user_id):
    return not config.allowed_user_ids or user_id in config.allowed_user_ids
