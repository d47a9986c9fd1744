from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Any

from agent_backend import AgentReply, ClaudeAgentBackend
from control_commands import NEW_SESSION_REPLY, ControlCommandDispatcher, is_reset_command
from conversation_history import ConversationHistory
from message_content import ConversationType, InboundMessage, extract_content
from message_dedup import DedupLedger
from runtime_config import RuntimeConfig
from session_registry import SessionDefaults, SessionRegistry


logger = logging.getLogger(__name__)

ERROR_REPLY = "抱歉，处理消息时出错了，请稍后再试。"
EMPTY_AGENT_REPLY = "智能体没有返回可显示的内容。"


class RouteOutcome(str, Enum):
    DROPPED = "dropped"
    DROPPED_NO_CONTENT = "dropped_no_content"
    RESET_REPLIED = "reset_replied"
    CONTROL_REPLIED = "control_replied"
    AGENT_REPLIED = "agent_replied"
    ERROR_REPLIED = "error_replied"


class MessageRouter:
    """receive -> dedupe -> resolve session -> command or agent -> reply.

    ``transport`` must provide ``acknowledge(message_id)`` and
    ``reply(conversation_id, conversation_type, text, recipient_hints)``,
    both awaitable. ``backend`` must provide ``execute(handle, prompt,
    session_key)`` returning an ``AgentReply``.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        history: ConversationHistory,
        dispatcher: ControlCommandDispatcher,
        ledger: DedupLedger,
        backend: Any,
        transport: Any,
        agent_timeout_seconds: float = 180,
    ) -> None:
        self.registry = registry
        self.history = history
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.backend = backend
        self.transport = transport
        self.agent_timeout_seconds = agent_timeout_seconds

    async def handle_event(self, message: InboundMessage) -> RouteOutcome:
        if not message.message_id:
            return RouteOutcome.DROPPED
        if not message.sender_id:
            logger.warning("message without sender dropped id=%s", message.message_id)
            return RouteOutcome.DROPPED
        if self.ledger.seen(message.message_id):
            logger.info("duplicate message dropped id=%s", message.message_id)
            return RouteOutcome.DROPPED
        self.ledger.mark_seen(message.message_id)
        await self._acknowledge(message.message_id)

        try:
            return await self._route(message)
        except Exception:
            logger.exception(
                "message handling failed id=%s sender=%s",
                message.message_id,
                message.sender_id,
            )
            await self._reply(message, ERROR_REPLY)
            return RouteOutcome.ERROR_REPLIED

    async def _route(self, message: InboundMessage) -> RouteOutcome:
        content = extract_content(message)
        if not content:
            return RouteOutcome.DROPPED_NO_CONTENT
        logger.info(
            "recv <- sender=%s conversation=%s type=%s content=%s",
            message.sender_id,
            message.conversation_id,
            message.message_type.value,
            content[:200],
        )

        if is_reset_command(content):
            await self._reset(message.sender_id)
            await self._reply(message, NEW_SESSION_REPLY)
            return RouteOutcome.RESET_REPLIED

        previous = self.registry.get(message.sender_id)
        session_key, is_new = self.registry.resolve(message.sender_id)
        if previous is not None and previous.session_key != session_key:
            self.history.clear(previous.session_key)
        if is_new:
            logger.info("session renewed sender=%s key=%s", message.sender_id, session_key)

        command = await self.dispatcher.try_handle(content, session_key)
        if command.handled:
            await self._reply(message, command.response or "")
            return RouteOutcome.CONTROL_REPLIED

        reply = await self._forward(session_key, content)
        if reply.error is not None:
            logger.error(
                "agent error sender=%s key=%s error=%s",
                message.sender_id,
                session_key,
                reply.error,
            )
            await self._reply(message, ERROR_REPLY)
            return RouteOutcome.ERROR_REPLIED

        text = reply.result or EMPTY_AGENT_REPLY
        if self.registry.get_by_key(session_key) is not None:
            self.history.append(session_key, content, text)
        await self._reply(message, text)
        return RouteOutcome.AGENT_REPLIED

    async def _reset(self, identity: str) -> None:
        session = self.registry.get(identity)
        if session is not None:
            self.history.clear(session.session_key)
            await self.registry.clear_session(session.session_key)
        # Runs still in flight keep the retired key.
        session_key, _ = self.registry.resolve(identity, force_new=True)
        logger.info(
            "session reset sender=%s old_key=%s new_key=%s",
            identity,
            session.session_key if session else None,
            session_key,
        )

    async def _forward(self, session_key: str, content: str) -> AgentReply:
        prompt = self.history.build_prompt(session_key, content)
        try:
            handle = await self.registry.ensure_agent_handle(session_key)
            return await asyncio.wait_for(
                self.backend.execute(handle, prompt, session_key),
                timeout=self.agent_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "agent timeout key=%s after %ss, dropping handle",
                session_key,
                self.agent_timeout_seconds,
            )
            await self.registry.invalidate_agent_handle(session_key)
            return AgentReply(result="", error="timeout")
        except Exception as exc:
            logger.exception("agent call failed key=%s", session_key)
            return AgentReply(result="", error=str(exc) or type(exc).__name__)

    async def _acknowledge(self, message_id: str) -> None:
        try:
            await self.transport.acknowledge(message_id)
        except Exception:
            logger.warning("transport ack failed id=%s", message_id, exc_info=True)

    async def _reply(self, message: InboundMessage, text: str) -> None:
        hints = None
        if message.conversation_type == ConversationType.GROUP and message.sender_id:
            hints = [message.sender_id]
        try:
            await self.transport.reply(
                message.conversation_id,
                message.conversation_type,
                text,
                recipient_hints=hints,
            )
        except Exception:
            logger.exception("reply failed conversation=%s", message.conversation_id)


def build_router(config: RuntimeConfig, transport: Any, log_dir: Path) -> MessageRouter:
    """Wire the default stores and the Claude backend around ``transport``."""
    backend = ClaudeAgentBackend(
        log_dir=log_dir,
        max_turns=config.max_turns,
        env=config.agent_env(),
    )
    registry = SessionRegistry(
        SessionDefaults(
            cwd=config.resolved_cwd(),
            model=config.agent_model,
            permission_mode=config.permission_mode,
        ),
        idle_timeout_ms=config.session_timeout_ms,
        backend=backend,
    )
    return MessageRouter(
        registry=registry,
        history=ConversationHistory(),
        dispatcher=ControlCommandDispatcher(registry),
        ledger=DedupLedger(),
        backend=backend,
        transport=transport,
        agent_timeout_seconds=config.agent_timeout_seconds,
    )
