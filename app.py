from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from chat_logging import configure_logging, read_heartbeat, write_heartbeat
from dingtalk_client import DingTalkClient, verify_callback_signature
from message_content import ConversationType, InboundMessage, MessageType
from message_router import MessageRouter, build_router
from reply_chunking import split_reply_text
from runtime_config import load_runtime_config


WORKSPACE_ROOT = Path(__file__).resolve().parent
LOG_DIR = WORKSPACE_ROOT / "logs"
RUNTIME_CONFIG = load_runtime_config(WORKSPACE_ROOT / ".env")
BRIDGE_HEARTBEAT_FILE = LOG_DIR / "bridge_heartbeat.json"
BRIDGE_HEARTBEAT_STALE_SECONDS = 180

logger = logging.getLogger("dingtalk_webhook")


class DingTalkText(BaseModel):
    content: str = ""


class DingTalkCallback(BaseModel):
    """Robot callback body; unknown fields are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    msg_id: str | None = Field(default=None, alias="msgId")
    msgtype: str = "text"
    text: DingTalkText | None = None
    content: dict[str, Any] | None = None
    conversation_id: str = Field(min_length=1, alias="conversationId")
    conversation_type: str = Field(default="1", alias="conversationType")
    sender_id: str = Field(default="", alias="senderId")
    sender_staff_id: str | None = Field(default=None, alias="senderStaffId")
    sender_nick: str = Field(default="", alias="senderNick")
    session_webhook: str | None = Field(default=None, alias="sessionWebhook")
    session_webhook_expired_time: int | None = Field(default=None, alias="sessionWebhookExpiredTime")

    def to_inbound(self) -> InboundMessage:
        content = self.content or {}
        rich_text = content.get("richText")
        recognition = content.get("recognition")
        return InboundMessage(
            message_id=self.msg_id,
            sender_id=self.sender_staff_id or self.sender_id,
            conversation_id=self.conversation_id,
            conversation_type=(
                ConversationType.GROUP if self.conversation_type == "2" else ConversationType.SINGLE
            ),
            message_type=MessageType.parse(self.msgtype),
            text=self.text.content if self.text else "",
            rich_text=[p for p in rich_text if isinstance(p, dict)] if isinstance(rich_text, list) else [],
            recognition=recognition if isinstance(recognition, str) else None,
            sender_nick=self.sender_nick,
            reply_context={
                "session_webhook": self.session_webhook,
                "expires_at_ms": self.session_webhook_expired_time,
            },
        )


class DingTalkTransport:
    """Replies through the per-conversation session webhook when still valid,
    otherwise through the configured robot webhook."""

    def __init__(self, client: DingTalkClient, max_reply_chars: int = 1500) -> None:
        self.client = client
        self.max_reply_chars = max_reply_chars
        self._session_webhooks: dict[str, tuple[str, int | None]] = {}

    def remember(self, message: InboundMessage) -> None:
        webhook = message.reply_context.get("session_webhook")
        if webhook:
            self._session_webhooks[message.conversation_id] = (
                webhook,
                message.reply_context.get("expires_at_ms"),
            )

    def webhook_for(self, conversation_id: str, now_ms: int | None = None) -> str | None:
        entry = self._session_webhooks.get(conversation_id)
        if entry is None:
            return None
        webhook, expires_at = entry
        now = int(time.time() * 1000) if now_ms is None else now_ms
        if expires_at is not None and expires_at <= now:
            del self._session_webhooks[conversation_id]
            return None
        return webhook

    async def acknowledge(self, message_id: str) -> None:
        # The HTTP 200 returned by the webhook route is the acknowledgement.
        write_heartbeat(BRIDGE_HEARTBEAT_FILE, "recv", message_id)

    async def reply(
        self,
        conversation_id: str,
        conversation_type: ConversationType,
        text: str,
        recipient_hints: list[str] | None = None,
    ) -> None:
        webhook = self.webhook_for(conversation_id)
        at_user_ids = recipient_hints if conversation_type == ConversationType.GROUP else None
        for chunk in split_reply_text(text, self.max_reply_chars):
            logger.info("send -> conversation=%s text=%s", conversation_id, chunk[:200])
            await asyncio.to_thread(
                self.client.send_text,
                chunk,
                at_user_ids=at_user_ids,
                webhook=webhook,
            )
        write_heartbeat(BRIDGE_HEARTBEAT_FILE, "send_ok", conversation_id)


TRANSPORT = DingTalkTransport(
    DingTalkClient(webhook=RUNTIME_CONFIG.dingtalk_webhook, secret=RUNTIME_CONFIG.dingtalk_secret),
    max_reply_chars=RUNTIME_CONFIG.max_reply_chars,
)
ROUTER: MessageRouter = build_router(RUNTIME_CONFIG, TRANSPORT, LOG_DIR)

app = FastAPI(title="Chat Agent Bridge")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await ROUTER.registry.close_all()


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {
        "status": "ok",
        "sessions": len(ROUTER.registry),
        "bridge": read_heartbeat(BRIDGE_HEARTBEAT_FILE, BRIDGE_HEARTBEAT_STALE_SECONDS),
    }


@app.post("/webhook/dingtalk")
async def dingtalk_webhook(
    payload: DingTalkCallback,
    background_tasks: BackgroundTasks,
    timestamp: str | None = Header(default=None),
    sign: str | None = Header(default=None),
) -> dict[str, bool]:
    if RUNTIME_CONFIG.dingtalk_app_secret and not verify_callback_signature(
        timestamp, sign, RUNTIME_CONFIG.dingtalk_app_secret
    ):
        raise HTTPException(status_code=401, detail="invalid signature")

    message = payload.to_inbound()
    TRANSPORT.remember(message)
    background_tasks.add_task(ROUTER.handle_event, message)
    return {"success": True}


def main() -> None:
    configure_logging(LOG_DIR, RUNTIME_CONFIG.log_level)
    uvicorn.run(app, host=RUNTIME_CONFIG.host, port=RUNTIME_CONFIG.port)


if __name__ == "__main__":
    main()
