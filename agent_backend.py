from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
)

from chat_logging import AgentRunLogger, serialize_message


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a coding agent reached through a team chat bot. "
    "Work inside the current working directory. Keep replies short and readable "
    "in a chat window; prefer plain text over large code dumps."
)

# Chat-facing permission modes and the SDK permission modes they stand for.
SDK_PERMISSION_MODES = {
    "default": "default",
    "plan": "plan",
    "auto-edit": "acceptEdits",
    "yolo": "bypassPermissions",
}

INTERRUPTED_MARKER = "[Request interrupted by user for tool use]"


@dataclass(frozen=True)
class AgentOptions:
    cwd: str
    model: str = ""
    permission_mode: str = "default"


@dataclass(frozen=True)
class AgentReply:
    result: str
    error: str | None = None


def to_sdk_permission_mode(mode: str) -> str:
    return SDK_PERMISSION_MODES.get(mode.strip().lower(), "default")


def _block_text(block: Any) -> str | None:
    if isinstance(block, dict):
        for key in ("text", "content"):
            value = block.get(key)
            if isinstance(value, str):
                return value
        return None
    for attr in ("text", "content"):
        value = getattr(block, attr, None)
        if isinstance(value, str):
            return value
    return None


def _block_is_error(block: Any) -> bool:
    if isinstance(block, dict):
        return bool(block.get("is_error"))
    return bool(getattr(block, "is_error", False))


class RunCollector:
    """Folds the SDK message stream of one run into an ``AgentReply``.

    Only assistant text blocks and the final result text count as output;
    message shapes it does not recognize are skipped.
    """

    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.tool_errors: list[str] = []
        self.interrupted = False
        self.result_text: str | None = None
        self.result_is_error = False
        self.result_subtype: str | None = None

    def feed(self, message: Any) -> bool:
        """Consume one message; returns True once the run is finished."""
        content = getattr(message, "content", None)
        if isinstance(content, list):
            for block in content:
                text = _block_text(block)
                if text == INTERRUPTED_MARKER:
                    self.interrupted = True
                if text and _block_is_error(block):
                    self.tool_errors.append(text)

        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock):
                    self.chunks.append(block.text)

        if isinstance(message, ResultMessage):
            if isinstance(message.result, str):
                self.result_text = message.result
            self.result_is_error = bool(message.is_error)
            self.result_subtype = message.subtype
            return True
        return False

    def reply(self) -> AgentReply:
        text = "\n".join(x for x in self.chunks if x and x.strip()).strip()
        if not text and self.result_text and not self.result_is_error:
            text = self.result_text.strip()
        if text:
            return AgentReply(result=text)

        if self.tool_errors:
            return AgentReply(result="", error=f"tool error: {self.tool_errors[-1]}")
        if self.result_is_error:
            detail = (self.result_text or self.result_subtype or "unknown").strip()
            return AgentReply(result="", error=f"agent run failed: {detail}")
        if self.interrupted or self.result_subtype == "error_during_execution":
            return AgentReply(result="", error="agent run interrupted")
        return AgentReply(result="")


class ClaudeAgentBackend:
    """Agent backend on top of ``ClaudeSDKClient``.

    A handle is a connected client. Its working directory is fixed when it is
    opened; model and permission mode can be switched in place.
    """

    def __init__(
        self,
        *,
        log_dir: Path,
        max_turns: int = 30,
        system_prompt: str = SYSTEM_PROMPT,
        env: dict[str, str] | None = None,
    ) -> None:
        self.log_dir = log_dir
        self.max_turns = max_turns
        self.system_prompt = system_prompt
        self.env = dict(env or {})

    def build_options(self, options: AgentOptions) -> ClaudeAgentOptions:
        kwargs: dict[str, Any] = {
            "system_prompt": self.system_prompt,
            "cwd": options.cwd,
            "permission_mode": to_sdk_permission_mode(options.permission_mode),
            "max_turns": self.max_turns,
            "setting_sources": ["project"],
        }
        if options.model:
            kwargs["model"] = options.model
        if self.env:
            kwargs["env"] = dict(self.env)
        return ClaudeAgentOptions(**kwargs)

    async def open(self, options: AgentOptions) -> ClaudeSDKClient:
        client = ClaudeSDKClient(options=self.build_options(options))
        await client.connect()
        logger.info(
            "agent handle opened cwd=%s model=%s mode=%s",
            options.cwd,
            options.model or "<default>",
            options.permission_mode,
        )
        return client

    async def execute(self, handle: Any, prompt: str, session_key: str = "default") -> AgentReply:
        run_log = AgentRunLogger(self.log_dir, session_key)
        run_log.log_event("request", {"prompt": prompt, "session_key": session_key})
        collector = RunCollector()
        try:
            await handle.query(prompt, session_id=session_key)
            async for message in handle.receive_response():
                run_log.log_event("message", serialize_message(message))
                if collector.feed(message):
                    break
        except Exception as exc:
            run_log.log_event("error", {"error": repr(exc)})
            logger.exception("agent run failed session=%s log=%s", session_key, run_log.path)
            return AgentReply(result="", error=str(exc) or type(exc).__name__)

        reply = collector.reply()
        run_log.log_event("response", {"result": reply.result, "error": reply.error})
        return reply

    async def reconfigure(
        self,
        handle: Any,
        *,
        model: str | None = None,
        permission_mode: str | None = None,
    ) -> bool:
        try:
            if model is not None:
                await handle.set_model(model or None)
            if permission_mode is not None:
                await handle.set_permission_mode(to_sdk_permission_mode(permission_mode))
        except Exception:
            logger.warning("agent handle reconfigure failed", exc_info=True)
            return False
        return True

    async def close(self, handle: Any) -> None:
        try:
            await handle.disconnect()
        except Exception:
            logger.warning("agent handle disconnect failed", exc_info=True)
