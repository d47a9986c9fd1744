from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

import lark_oapi as lark
from lark_oapi.api.im.v1 import (
    CreateMessageRequest,
    CreateMessageRequestBody,
    P2ImMessageReceiveV1,
)

from chat_logging import configure_logging, write_heartbeat
from message_content import ConversationType, InboundMessage, MessageType
from message_router import MessageRouter, build_router
from reply_chunking import split_reply_text
from runtime_config import load_runtime_config


WORKSPACE_ROOT = Path(__file__).resolve().parent
LOG_DIR = WORKSPACE_ROOT / "logs"
HEARTBEAT_FILE = LOG_DIR / "bridge_heartbeat.json"

_logger = logging.getLogger("feishu_ws_bridge")

FEISHU_MESSAGE_TYPES = {
    "text": MessageType.TEXT,
    "post": MessageType.RICH_TEXT,
    "audio": MessageType.AUDIO,
    "image": MessageType.PICTURE,
    "media": MessageType.VIDEO,
    "file": MessageType.FILE,
}
_MENTION_KEY = re.compile(r"@_user_\d+")


def _load_content(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {"text": raw}
    return data if isinstance(data, dict) else {}


def _post_to_parts(content: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten a ``post`` body into ordered parts; lines are joined by ``\\n``."""
    body = content
    if "content" not in body:
        # Locale-wrapped form: {"zh_cn": {"title": ..., "content": [...]}}
        body = next((v for v in content.values() if isinstance(v, dict) and "content" in v), {})
    parts: list[dict[str, Any]] = []
    title = body.get("title")
    if isinstance(title, str) and title.strip():
        parts.append({"type": "text", "text": title.strip()})
    for line in body.get("content") or []:
        if not isinstance(line, list):
            continue
        if parts:
            parts.append({"type": "text", "text": "\n"})
        for element in line:
            if isinstance(element, dict):
                parts.append({"type": element.get("tag", ""), "text": element.get("text", "")})
    return parts


def inbound_from_event(data: P2ImMessageReceiveV1) -> InboundMessage | None:
    event = data.event
    message = event.message if event else None
    sender = event.sender if event else None
    if message is None or (sender and getattr(sender, "sender_type", None) == "bot"):
        return None

    sender_ids = getattr(sender, "sender_id", None)
    sender_id = getattr(sender_ids, "open_id", None) or getattr(sender_ids, "user_id", None) or ""
    message_type = FEISHU_MESSAGE_TYPES.get(message.message_type or "", MessageType.UNKNOWN)
    content = _load_content(message.content or "")

    text = content.get("text") if isinstance(content.get("text"), str) else ""
    text = _MENTION_KEY.sub("", text)
    return InboundMessage(
        message_id=message.message_id,
        sender_id=sender_id,
        conversation_id=message.chat_id or "",
        conversation_type=(
            ConversationType.GROUP if message.chat_type == "group" else ConversationType.SINGLE
        ),
        message_type=message_type,
        text=text,
        rich_text=_post_to_parts(content) if message_type == MessageType.RICH_TEXT else [],
    )


def format_mentions(text: str, recipient_hints: list[str] | None) -> str:
    if not recipient_hints:
        return text
    mentions = "".join(f'<at user_id="{open_id}"></at>' for open_id in recipient_hints)
    return f"{mentions} {text}"


class FeishuWSBridge:
    """Feishu long-connection transport feeding a ``MessageRouter``."""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        encrypt_key: str = "",
        verification_token: str = "",
        max_reply_chars: int = 1500,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.encrypt_key = encrypt_key
        self.verification_token = verification_token
        self.max_reply_chars = max(1, int(max_reply_chars))
        self.router: MessageRouter | None = None
        self._client: Any = None
        self._ws_client: Any = None
        self._tasks: set[asyncio.Task] = set()

    def _send_text_once(self, chat_id: str, text: str) -> None:
        _logger.info("send -> chat_id=%s text=%s", chat_id, text[:200])
        request = (
            CreateMessageRequest.builder()
            .receive_id_type("chat_id")
            .request_body(
                CreateMessageRequestBody.builder()
                .receive_id(chat_id)
                .msg_type("text")
                .content(json.dumps({"text": text}, ensure_ascii=False))
                .build()
            )
            .build()
        )
        resp = self._client.im.v1.message.create(request)
        if not resp.success():
            raise RuntimeError(f"Feishu send message error: code={resp.code} msg={resp.msg}")
        _logger.info("send <- chat_id=%s code=%s", chat_id, resp.code)

    async def acknowledge(self, message_id: str) -> None:
        # The SDK acks the frame once the event handler returns.
        write_heartbeat(HEARTBEAT_FILE, "recv", message_id)

    async def reply(
        self,
        conversation_id: str,
        conversation_type: ConversationType,
        text: str,
        recipient_hints: list[str] | None = None,
    ) -> None:
        hints = recipient_hints if conversation_type == ConversationType.GROUP else None
        for idx, chunk in enumerate(split_reply_text(text, self.max_reply_chars)):
            body = format_mentions(chunk, hints) if idx == 0 else chunk
            await asyncio.to_thread(self._send_text_once, conversation_id, body)
        write_heartbeat(HEARTBEAT_FILE, "send_ok", conversation_id)

    def _event_handler(self, data: P2ImMessageReceiveV1) -> None:
        try:
            message = inbound_from_event(data)
            if message is None or self.router is None:
                return
            _logger.info(
                "recv <- chat_id=%s type=%s id=%s",
                message.conversation_id,
                message.message_type.value,
                message.message_id,
            )
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None

            if loop and loop.is_running():
                task = loop.create_task(self.router.handle_event(message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            else:
                asyncio.run(self.router.handle_event(message))
        except Exception as exc:
            _logger.exception("event_handler error: %s", exc)
            write_heartbeat(HEARTBEAT_FILE, "event_handler_error")

    def start(self) -> None:
        self._client = (
            lark.Client.builder()
            .app_id(self.app_id)
            .app_secret(self.app_secret)
            .log_level(lark.LogLevel.INFO)
            .build()
        )
        event_handler = (
            lark.EventDispatcherHandler.builder(self.encrypt_key, self.verification_token)
            .register_p2_im_message_receive_v1(self._event_handler)
            .build()
        )
        self._ws_client = lark.ws.Client(
            self.app_id,
            self.app_secret,
            event_handler=event_handler,
            log_level=lark.LogLevel.INFO,
        )
        _logger.info("websocket client started")
        write_heartbeat(HEARTBEAT_FILE, "started")
        self._ws_client.start()


def main() -> None:
    cfg = load_runtime_config(WORKSPACE_ROOT / ".env")
    configure_logging(LOG_DIR, cfg.log_level)
    if not cfg.feishu_app_id or not cfg.feishu_app_secret:
        raise SystemExit("Missing FEISHU_APP_ID or FEISHU_APP_SECRET in .env")
    bridge = FeishuWSBridge(
        app_id=cfg.feishu_app_id,
        app_secret=cfg.feishu_app_secret,
        encrypt_key=cfg.feishu_encrypt_key,
        verification_token=cfg.feishu_verification_token,
        max_reply_chars=cfg.max_reply_chars,
    )
    bridge.router = build_router(cfg, bridge, LOG_DIR)
    bridge.start()


if __name__ == "__main__":
    main()
