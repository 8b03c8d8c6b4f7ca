"""Chat transport: post and edit notifications, with Telegram as the backend.

Channel ids are strings. Private chats are ``D<chat_id>`` so scope keys for
them include the user; groups are ``G<chat_id>``. Forum topics map to threads.
"""
import logging
from dataclasses import dataclass, field
from typing import Protocol

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ChatType, ParseMode

from clydegate.scope import DM_PREFIX

logger = logging.getLogger(__name__)

GROUP_PREFIX = "G"
APPROVE_ACTION = "approve_tool"
DENY_ACTION = "deny_tool"
MAX_MESSAGE_LENGTH = 4096


@dataclass(frozen=True)
class Action:
    label: str
    action_id: str
    value: str


@dataclass(frozen=True)
class Notification:
    text: str
    actions: tuple[Action, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MessageRef:
    channel_id: str
    message_id: str


class ChatTransport(Protocol):
    async def post_message(self, channel_id: str, thread_id: str | None,
                           content: Notification) -> MessageRef: ...

    async def update_message(self, ref: MessageRef, content: Notification) -> None: ...


def channel_id_for_chat(chat) -> str:
    prefix = DM_PREFIX if chat.type == ChatType.PRIVATE else GROUP_PREFIX
    return "%s%d" % (prefix, chat.id)


def chat_id_from_channel(channel_id: str) -> int:
    if channel_id[:1] in (DM_PREFIX, GROUP_PREFIX):
        return int(channel_id[1:])
    return int(channel_id)


def thread_id_for_message(message) -> str | None:
    if getattr(message, "is_topic_message", False) and message.message_thread_id:
        return str(message.message_thread_id)
    return None


def encode_callback(action_id: str, value: str) -> str:
    return "%s:%s" % (action_id, value)


def decode_callback(data: str) -> tuple[str, str] | None:
    action_id, sep, value = (data or "").partition(":")
    if not sep or not value:
        return None
    return action_id, value


def chunk_message(text, max_length=MAX_MESSAGE_LENGTH):
    if len(text) <= max_length: return [text]
    chunks = []
    while text:
        if len(text) <= max_length: chunks.append(text); break
        sp = text.rfind("\n", 0, max_length)
        if sp == -1 or sp < max_length // 2: sp = text.rfind(" ", 0, max_length)
        if sp == -1 or sp < max_length // 2: sp = max_length
        chunks.append(text[:sp]); text = text[sp:].lstrip()
    return chunks


class TelegramTransport:
    """ChatTransport backed by a ``telegram.Bot``."""

    def __init__(self, bot):
        self.bot = bot

    @staticmethod
    def _markup(content: Notification):
        if not content.actions:
            return None
        return InlineKeyboardMarkup([
            [InlineKeyboardButton(a.label, callback_data=encode_callback(a.action_id, a.value))
             for a in content.actions]
        ])

    async def post_message(self, channel_id, thread_id, content):
        kwargs = {}
        if thread_id:
            kwargs["message_thread_id"] = int(thread_id)
        msg = await self.bot.send_message(
            chat_id=chat_id_from_channel(channel_id),
            text=content.text[:MAX_MESSAGE_LENGTH],
            parse_mode=ParseMode.MARKDOWN,
            reply_markup=self._markup(content),
            **kwargs,
        )
        return MessageRef(channel_id=channel_id, message_id=str(msg.message_id))

    async def update_message(self, ref, content):
        await self.bot.edit_message_text(
            text=content.text[:MAX_MESSAGE_LENGTH],
            chat_id=chat_id_from_channel(ref.channel_id),
            message_id=int(ref.message_id),
            parse_mode=ParseMode.MARKDOWN,
            reply_markup=self._markup(content),
        )
