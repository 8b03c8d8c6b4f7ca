"""Danger classifier for auto mode.

Anything the catalogue does not match is treated as safe. Auto mode trades
completeness for fewer interruptions; approval mode is the strict setting.
"""
import os
import re
from dataclasses import dataclass

SHELL_TOOLS = frozenset({"Bash"})
FILE_WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit"})

# (label, pattern), searched anywhere in the command text.
DANGEROUS_BASH_PATTERNS: tuple[tuple[str, re.Pattern], ...] = tuple(
    (label, re.compile(pattern)) for label, pattern in (
        # Deletion of root-like or wildcard targets
        ("recursive/forced delete of a broad target", r"rm\s+(-[rRf]+\s+)*[^\s]*(\*|/\s*$|~|\.\.)"),
        ("recursive/forced delete from an absolute path", r"rm\s+-[rRf]*\s+/"),
        # Version control history rewrites
        ("git force push", r"git\s+push\s+.*--force"),
        ("git force push", r"git\s+push\s+-f"),
        ("git hard reset", r"git\s+reset\s+--hard"),
        ("git clean", r"git\s+clean\s+-[fdx]"),
        ("git checkout of the whole tree", r"git\s+checkout\s+\.\s*$"),
        ("git restore of the whole tree", r"git\s+restore\s+\.\s*$"),
        # Privilege and permissions
        ("privilege escalation", r"sudo\s+"),
        ("world-writable permissions", r"chmod\s+(-R\s+)?777"),
        ("recursive ownership change", r"chown\s+-R"),
        # Remote code execution
        ("remote script piped to a shell", r"curl\s+[^|]*\|\s*(sh|bash|zsh)"),
        ("remote script piped to a shell", r"wget\s+[^|]*\|\s*(sh|bash|zsh)"),
        # Environment and secrets
        ("environment dump", r"^\s*env\s*$"),
        ("environment dump", r"^\s*printenv\s*$"),
        ("secrets file read", r"cat\s+[^\s]*\.env"),
        # Processes and services
        ("forced process kill", r"kill\s+-9\s+"),
        ("process kill by name", r"pkill\s+"),
        ("process kill by name", r"killall\s+"),
        ("service unload", r"launchctl\s+(unload|remove|bootout)"),
        # Package publishing
        ("package publish", r"npm\s+publish"),
        ("package publish", r"yarn\s+publish"),
        # Disks and filesystems
        ("filesystem format", r"mkfs\."),
        ("raw disk write", r"dd\s+if="),
        ("disk partitioning", r"fdisk"),
    )
)


@dataclass(frozen=True)
class SafetyVerdict:
    safe: bool
    reason: str = ""

    @classmethod
    def ok(cls) -> "SafetyVerdict":
        return cls(safe=True)

    @classmethod
    def unsafe(cls, reason: str) -> "SafetyVerdict":
        return cls(safe=False, reason=reason)


def match_dangerous_command(command: str) -> str | None:
    """Return the label of the first catalogue entry matching ``command``."""
    for label, pattern in DANGEROUS_BASH_PATTERNS:
        if pattern.search(command):
            return label
    return None


def is_within_directory(file_path: str, directory: str) -> bool:
    """Lexical containment check; ``..`` and ``.`` are resolved, symlinks are not."""
    root = os.path.normpath(os.path.abspath(directory))
    target = os.path.normpath(os.path.join(root, file_path))
    return target == root or target.startswith(root.rstrip(os.sep) + os.sep)


def classify(tool_name: str, tool_input: dict, working_directory: str | None = None) -> SafetyVerdict:
    if tool_name in SHELL_TOOLS:
        command = tool_input.get("command")
        if isinstance(command, str):
            label = match_dangerous_command(command)
            if label:
                return SafetyVerdict.unsafe("Dangerous command (%s): %s" % (label, command[:200]))

    if working_directory and tool_name in FILE_WRITE_TOOLS:
        file_path = tool_input.get("file_path")
        if isinstance(file_path, str) and file_path and not is_within_directory(file_path, working_directory):
            return SafetyVerdict.unsafe(
                'File path "%s" is outside working directory "%s"' % (file_path, working_directory))

    return SafetyVerdict.ok()
