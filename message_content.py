from __future__ import annotations

import unicodedata
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


AUDIO_PLACEHOLDER = "[语音消息]"
PICTURE_PLACEHOLDER = "[图片]"
VIDEO_PLACEHOLDER = "[视频]"
FILE_PLACEHOLDER = "[文件]"


class MessageType(str, Enum):
    TEXT = "text"
    RICH_TEXT = "richText"
    AUDIO = "audio"
    PICTURE = "picture"
    VIDEO = "video"
    FILE = "file"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> "MessageType":
        try:
            return cls(raw or "")
        except ValueError:
            return cls.UNKNOWN


class ConversationType(str, Enum):
    SINGLE = "single"
    GROUP = "group"


@dataclass
class InboundMessage:
    message_id: str | None
    sender_id: str
    conversation_id: str
    conversation_type: ConversationType = ConversationType.SINGLE
    message_type: MessageType = MessageType.TEXT
    text: str = ""
    rich_text: list[dict[str, Any]] = field(default_factory=list)
    recognition: str | None = None
    sender_nick: str = ""
    reply_context: dict[str, Any] = field(default_factory=dict)


def sanitize_text(text: str) -> str:
    if not isinstance(text, str):
        text = str(text)
    normalized = unicodedata.normalize("NFC", text)
    cleaned = normalized.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    return "".join(ch for ch in cleaned if ch in {"\n", "\t"} or ord(ch) >= 32)


def _extract_text(message: InboundMessage) -> str:
    return sanitize_text(message.text).strip()


def _extract_rich_text(message: InboundMessage) -> str:
    parts: list[str] = []
    for part in message.rich_text:
        if not isinstance(part, dict):
            continue
        if part.get("type", "text") != "text":
            continue
        text = part.get("text")
        if isinstance(text, str):
            parts.append(text)
    return sanitize_text("".join(parts)).strip()


def _extract_audio(message: InboundMessage) -> str:
    recognition = sanitize_text(message.recognition or "").strip()
    return recognition or AUDIO_PLACEHOLDER


def _placeholder(value: str) -> Callable[[InboundMessage], str]:
    def extract(message: InboundMessage) -> str:
        _ = message
        return value

    return extract


EXTRACTORS: dict[MessageType, Callable[[InboundMessage], str]] = {
    MessageType.TEXT: _extract_text,
    MessageType.RICH_TEXT: _extract_rich_text,
    MessageType.AUDIO: _extract_audio,
    MessageType.PICTURE: _placeholder(PICTURE_PLACEHOLDER),
    MessageType.VIDEO: _placeholder(VIDEO_PLACEHOLDER),
    MessageType.FILE: _placeholder(FILE_PLACEHOLDER),
}


def extract_content(message: InboundMessage) -> str:
    extractor = EXTRACTORS.get(message.message_type, _extract_text)
    return extractor(message)
