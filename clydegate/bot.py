#!/usr/bin/env python3
"""
clydegate - Telegram to Claude Agent SDK bridge with an approval gateway.

Each chat, DM or forum topic is a scope with its own permission mode
(approval / bypass / auto), working directory and resumable Claude session.
Sessions, directories and modes are backed up on a timer and at shutdown,
and restored at startup.
"""
import asyncio
import logging
import sys
import time

from telegram import BotCommand, Update
from telegram.constants import ChatAction
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, MessageHandler, filters

from clydegate import __version__
from clydegate.agent import AgentRunner, PermissionBroker
from clydegate.approval import ApprovalCoordinator
from clydegate.audit import AuditTrail
from clydegate.backup import BackupManager
from clydegate.config import Config, is_authorized
from clydegate.mailbox import ResolutionMailbox
from clydegate.modes import PermissionModeStore, format_status_message, is_status_query, parse_command
from clydegate.scope import ScopeContext
from clydegate.sessions import SessionStore
from clydegate.transport import (
    APPROVE_ACTION,
    DENY_ACTION,
    TelegramTransport,
    channel_id_for_chat,
    chunk_message,
    decode_callback,
    thread_id_for_message,
)
from clydegate.workdirs import WorkingDirectoryStore

logger = logging.getLogger("clydegate")

VERSION = __version__
REAP_INTERVAL = 3600


def scope_from_update(update) -> ScopeContext:
    msg = update.effective_message
    return ScopeContext(
        channel_id=channel_id_for_chat(update.effective_chat),
        thread_id=thread_id_for_message(msg) if msg else None,
        user_id=str(update.effective_user.id),
    )


async def keep_typing(update, interval=4.0):
    try:
        while True:
            await update.effective_chat.send_action(ChatAction.TYPING)
            await asyncio.sleep(interval)
    except asyncio.CancelledError: pass


# ─── Command Handlers ───────────────────────────────────────────────────────

async def cmd_start(update, context):
    config = context.bot_data["config"]
    uid = update.effective_user.id
    if not is_authorized(config, uid):
        await update.message.reply_text("Unauthorized. Your user ID is: %d" % uid)
        return
    ctx = scope_from_update(update)
    mode = context.bot_data["modes"].get_mode(ctx)
    text = (
        "clydegate online\n\n"
        "Send any message to talk to Claude. Tool calls are gated by the mode of %s.\n\n"
        "Mode: %s\nWorkspace: %s\n\n"
        "`approval on` / `auto on` / `bypass on` - change mode\n"
        "`mode?` - show mode\n"
        "/cwd [path] - show or set working directory\n"
        "/resume <session-id> - continue an existing Claude session\n"
        "/stop - cancel the running request\n"
        "/new - fresh conversation\n"
        "/status - bot status"
    ) % (ctx.label(), mode.value, context.bot_data["workdirs"].get(ctx) or "not set")
    await update.message.reply_text(text)


async def cmd_status(update, context):
    config = context.bot_data["config"]
    if not is_authorized(config, update.effective_user.id): return
    ctx = scope_from_update(update)
    sessions = context.bot_data["sessions"]
    session = sessions.get(ctx.user_id, ctx.channel_id, ctx.thread_id)
    coordinator = context.bot_data["coordinator"]
    text = (
        "clydegate status\n\nVersion: %s\nScope: %s\nMode: %s\nWorkspace: %s\n"
        "Session: %s\nSessions tracked: %d\nPending approvals: %d\nBackups: %s"
    ) % (VERSION, ctx.scope_key, context.bot_data["modes"].get_mode(ctx).value,
         context.bot_data["workdirs"].get(ctx) or "not set",
         (session.external_session_id or "new") if session else "none",
         len(sessions), len(coordinator.outstanding), context.bot_data["backup"].directory)
    await update.message.reply_text(text)


async def cmd_cwd(update, context):
    config = context.bot_data["config"]
    if not is_authorized(config, update.effective_user.id): return
    ctx = scope_from_update(update)
    workdirs = context.bot_data["workdirs"]
    if not context.args:
        await update.message.reply_text("Working directory: %s" % (workdirs.get(ctx) or "not set"))
        return
    try:
        path = workdirs.set(ctx, " ".join(context.args))
    except ValueError as e:
        await update.message.reply_text("❌ %s" % e)
        return
    await update.message.reply_text("✅ Working directory for %s: %s" % (ctx.label(), path))


async def cmd_resume(update, context):
    config = context.bot_data["config"]
    if not is_authorized(config, update.effective_user.id): return
    if not context.args:
        await update.message.reply_text("Usage: /resume <session-id>")
        return
    ctx = scope_from_update(update)
    context.bot_data["sessions"].attach_external_id(ctx.user_id, ctx.channel_id, ctx.thread_id, context.args[0])
    await update.message.reply_text("🔗 Next message continues session %s" % context.args[0])


async def cmd_stop(update, context):
    config = context.bot_data["config"]
    if not is_authorized(config, update.effective_user.id): return
    ctx = scope_from_update(update)
    cancel = context.bot_data["active"].get(ctx.scope_key)
    if cancel is None:
        await update.message.reply_text("Nothing running.")
        return
    cancel.set()
    await update.message.reply_text("⏹ Stopping...")


async def cmd_new(update, context):
    config = context.bot_data["config"]
    if not is_authorized(config, update.effective_user.id): return
    ctx = scope_from_update(update)
    context.bot_data["sessions"].remove(ctx.user_id, ctx.channel_id, ctx.thread_id)
    await update.message.reply_text("Conversation reset. Send a message to start fresh.")


# ─── Message Handlers ───────────────────────────────────────────────────────

async def handle_message(update, context):
    if not update.message or not update.message.text: return
    config = context.bot_data["config"]
    uid = update.effective_user.id
    if not is_authorized(config, uid):
        await update.message.reply_text("Unauthorized. ID: %d" % uid); return
    text = update.message.text

    ctx = scope_from_update(update)
    modes = context.bot_data["modes"]

    mode = parse_command(text)
    if mode is not None:
        modes.set_mode(ctx, mode)
        await update.message.reply_text(format_status_message(mode, ctx.label()), parse_mode="Markdown")
        return
    if is_status_query(text):
        await update.message.reply_text(format_status_message(modes.get_mode(ctx), ctx.label()), parse_mode="Markdown")
        return

    active = context.bot_data["active"]
    if ctx.scope_key in active:
        await update.message.reply_text("⏳ Still working on the previous request. Send /stop to cancel it.")
        return

    logger.info("User %s in %s: %s", ctx.user_id, ctx.scope_key, text[:100])
    cancel = asyncio.Event()
    active[ctx.scope_key] = cancel
    typing_task = asyncio.create_task(keep_typing(update))
    try:
        t0 = time.monotonic()
        response = await context.bot_data["runner"].run_turn(ctx, text, cancel=cancel)
        elapsed = time.monotonic() - t0
        logger.info("Response in %.1fs (%d chars)", elapsed, len(response))
        if cancel.is_set():
            response += "\n\n(stopped)"
        for chunk in chunk_message(response + "\n\n(%.1fs)" % elapsed):
            await update.message.reply_text(chunk)
    except Exception as e:
        logger.error("Error: %s", e, exc_info=True)
        await update.message.reply_text("Error: %s: %s" % (type(e).__name__, e))
    finally:
        active.pop(ctx.scope_key, None)
        typing_task.cancel()
        try: await typing_task
        except asyncio.CancelledError: pass


async def handle_approval_click(update, context):
    query = update.callback_query
    config = context.bot_data["config"]
    if not is_authorized(config, query.from_user.id):
        await query.answer("Unauthorized.")
        return
    decoded = decode_callback(query.data)
    if not decoded or decoded[0] not in (APPROVE_ACTION, DENY_ACTION):
        await query.answer()
        return
    action_id, ticket_id = decoded
    approved = action_id == APPROVE_ACTION
    user = query.from_user.username or str(query.from_user.id)
    accepted = context.bot_data["coordinator"].resolve(ticket_id, approved, user=user)
    if accepted:
        await query.answer("Approved" if approved else "Denied")
    else:
        await query.answer("This request is no longer pending.")


# ─── Lifecycle ──────────────────────────────────────────────────────────────

async def session_reaper(sessions, timeout_hours, interval=REAP_INTERVAL):
    while True:
        await asyncio.sleep(interval)
        try:
            sessions.reap(timeout_hours)
        except Exception as e:
            logger.error("Session reaping failed: %s", e, exc_info=True)


async def post_init(app):
    data = app.bot_data
    config, backup = data["config"], data["backup"]
    snapshot = backup.read_durable()
    if snapshot:
        backup.restore_into(snapshot, data["sessions"], data["workdirs"], data["modes"])
        logger.info("Restored backup from %s", snapshot.timestamp.isoformat())
    backup.start_periodic(
        data["sessions"].all, data["workdirs"].snapshot,
        config.backup_interval_minutes, get_modes=data["modes"].snapshot,
    )
    data["reaper"] = asyncio.create_task(session_reaper(data["sessions"], config.session_timeout_hours))
    await app.bot.set_my_commands([
        BotCommand("start", "Welcome and usage"),
        BotCommand("status", "Bot and scope status"),
        BotCommand("cwd", "Show or set working directory"),
        BotCommand("resume", "Continue an existing Claude session"),
        BotCommand("stop", "Cancel the running request"),
        BotCommand("new", "Fresh conversation"),
    ])


async def post_shutdown(app):
    data = app.bot_data
    logger.info("Shutting down, saving session backup...")
    for cancel in list(data["active"].values()):
        cancel.set()
    reaper = data.pop("reaper", None)
    if reaper: reaper.cancel()
    backup = data["backup"]
    backup.stop()
    backup.save_now(data["sessions"].all, data["workdirs"].snapshot, data["modes"].snapshot)


def build_application(config: Config) -> Application:
    # approval clicks arrive while a turn is still waiting on them
    app = (Application.builder().token(config.telegram_token).concurrent_updates(True)
           .post_init(post_init).post_shutdown(post_shutdown).build())

    audit = AuditTrail(config.audit_trail_path)
    modes = PermissionModeStore(audit=audit)
    sessions = SessionStore()
    workdirs = WorkingDirectoryStore(default=config.working_dir, base_directory=config.base_dir)
    coordinator = ApprovalCoordinator(
        TelegramTransport(app.bot), ResolutionMailbox(config.approvals_dir),
        timeout=config.approval_timeout, poll_interval=config.poll_interval, audit=audit,
    )
    broker = PermissionBroker(coordinator, modes, workdirs)

    app.bot_data.update({
        "config": config,
        "modes": modes,
        "sessions": sessions,
        "workdirs": workdirs,
        "coordinator": coordinator,
        "runner": AgentRunner(config, broker, sessions, modes, workdirs),
        "backup": BackupManager(config.backups_dir),
        "active": {},
    })

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("status", cmd_status))
    app.add_handler(CommandHandler("cwd", cmd_cwd))
    app.add_handler(CommandHandler("resume", cmd_resume))
    app.add_handler(CommandHandler("stop", cmd_stop))
    app.add_handler(CommandHandler("new", cmd_new))
    app.add_handler(CallbackQueryHandler(handle_approval_click))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))
    return app


def main():
    from dotenv import load_dotenv
    load_dotenv()
    config = Config.from_env()
    logging.basicConfig(format="%(asctime)s [clydegate] %(levelname)s: %(message)s",
                        level=logging.DEBUG if config.debug else logging.INFO)
    errors = config.validate()
    if errors:
        for e in errors: logger.error(e)
        print("\nTELEGRAM_BOT_TOKEN required.")
        print("Auth: run `claude` to login (OAuth) or set ANTHROPIC_API_KEY")
        sys.exit(1)

    logger.info("clydegate v%s starting...", VERSION)
    logger.info("  Workspace: %s", config.working_dir)
    logger.info("  Base directory: %s", config.base_dir or "not set")
    logger.info("  Allowed users: %s", config.allowed_user_ids or "everyone")
    logger.info("  Approval timeout: %ss", config.approval_timeout)
    logger.info("  Session timeout: %s", "%sh" % config.session_timeout_hours if config.session_timeout_hours > 0 else "never")
    logger.info("  State: %s", config.state_dir)

    app = build_application(config)
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
