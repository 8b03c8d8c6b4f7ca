#!/usr/bin/env python3
"""
List Claude sessions saved in the clydegate backup and print how to resume them
from a terminal.

Usage:
    clydegate-sessions                # all sessions, newest first
    clydegate-sessions --latest       # most recent session only
    clydegate-sessions <session-id>   # one session
"""
import sys

from dotenv import load_dotenv

from clydegate.backup import BackupManager
from clydegate.config import Config
from clydegate.scope import ScopeContext


def session_rows(snapshot):
    rows = []
    for s in sorted(snapshot.sessions, key=lambda s: s.last_activity, reverse=True):
        if not s.external_session_id:
            continue
        ctx = ScopeContext(s.channel_id, s.thread_id, s.user_id)
        dirs = snapshot.working_directories
        cwd = (dirs.get(ctx.thread_key) if ctx.thread_key else None) or dirs.get(ctx.channel_key)
        rows.append((s, cwd))
    return rows


def format_row(session, cwd):
    lines = [
        "Session:   %s" % session.external_session_id,
        "  Scope:   %s" % session.key,
        "  Active:  %s" % session.last_activity.strftime("%Y-%m-%d %H:%M UTC"),
    ]
    if cwd:
        lines.append("  Dir:     %s" % cwd)
        lines.append("  Resume:  cd %s && claude --resume %s" % (cwd, session.external_session_id))
    else:
        lines.append("  Resume:  claude --resume %s" % session.external_session_id)
    return "\n".join(lines)


def main():
    load_dotenv()
    config = Config.from_env()
    manager = BackupManager(config.backups_dir)
    snapshot = manager.read_durable()
    if snapshot is None:
        print("No session backup found in %s" % manager.directory)
        sys.exit(1)

    rows = session_rows(snapshot)
    args = sys.argv[1:]
    if args and args[0] == "--latest":
        rows = rows[:1]
    elif args:
        rows = [r for r in rows if r[0].external_session_id == args[0]]
        if not rows:
            print("Session %s not found in backup" % args[0])
            sys.exit(1)

    if not rows:
        print("No resumable sessions in backup (saved %s)" % snapshot.timestamp.isoformat())
        return
    print("Backup from %s\n" % snapshot.timestamp.isoformat())
    for session, cwd in rows:
        print(format_row(session, cwd))
        print()


if __name__ == "__main__":
    main()
