from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_backend import AgentOptions
from runtime_config import PERMISSION_MODES


logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT_MS = 1_800_000


@dataclass(frozen=True)
class SessionDefaults:
    cwd: str
    model: str = ""
    permission_mode: str = "default"


@dataclass
class UserSession:
    identity: str
    session_key: str
    last_activity: float
    cwd: str
    model: str
    permission_mode: str
    agent_handle: Any = None

    def agent_options(self) -> AgentOptions:
        return AgentOptions(cwd=self.cwd, model=self.model, permission_mode=self.permission_mode)


def normalize_permission_mode(raw: str) -> str | None:
    value = raw.strip().lower()
    return value if value in PERMISSION_MODES else None


class SessionRegistry:
    """One ``UserSession`` per chat identity, with lazy idle expiry.

    ``backend`` only needs ``open``/``close``/``reconfigure``; it may be None
    when no agent handles are ever opened (tests, dry runs).

    Mutations of the same identity are not serialized: a ``cwd`` change racing
    a prompt that already holds the old handle is a known limitation. Every
    handle opened here is either stored on its session or closed.
    """

    def __init__(
        self,
        defaults: SessionDefaults,
        idle_timeout_ms: int = DEFAULT_IDLE_TIMEOUT_MS,
        backend: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.defaults = defaults
        self.idle_timeout_ms = idle_timeout_ms
        self.backend = backend
        self._clock = clock
        self._by_identity: dict[str, UserSession] = {}
        self._by_key: dict[str, UserSession] = {}
        self._pending_close: list[Any] = []

    def __len__(self) -> int:
        return len(self._by_identity)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _new_key(self, identity: str, now_ms: int) -> str:
        key = f"{identity}_{now_ms}"
        suffix = 1
        while key in self._by_key:
            key = f"{identity}_{now_ms}_{suffix}"
            suffix += 1
        return key

    def _store(self, identity: str, session_key: str, now_ms: int) -> UserSession:
        previous = self._by_identity.get(identity)
        if previous is not None:
            self._by_key.pop(previous.session_key, None)
            if previous.agent_handle is not None:
                self._pending_close.append(previous.agent_handle)
                previous.agent_handle = None
        session = UserSession(
            identity=identity,
            session_key=session_key,
            last_activity=now_ms,
            cwd=self.defaults.cwd,
            model=self.defaults.model,
            permission_mode=self.defaults.permission_mode,
        )
        self._by_identity[identity] = session
        self._by_key[session_key] = session
        return session

    def resolve(self, identity: str, force_new: bool = False) -> tuple[str, bool]:
        now_ms = self._now_ms()
        existing = self._by_identity.get(identity)

        expired = existing is not None and now_ms - existing.last_activity > self.idle_timeout_ms
        if force_new or expired:
            if expired and not force_new:
                logger.info("session idle timeout identity=%s key=%s", identity, existing.session_key)
            session = self._store(identity, self._new_key(identity, now_ms), now_ms)
            return session.session_key, True

        if existing is not None:
            existing.last_activity = now_ms
            return existing.session_key, False

        session = self._store(identity, identity, now_ms)
        return session.session_key, False

    def get(self, identity: str) -> UserSession | None:
        return self._by_identity.get(identity)

    def get_by_key(self, session_key: str) -> UserSession | None:
        return self._by_key.get(session_key)

    def get_cwd(self, session_key: str) -> str:
        session = self._by_key.get(session_key)
        return session.cwd if session else self.defaults.cwd

    def get_model(self, session_key: str) -> str:
        session = self._by_key.get(session_key)
        return session.model if session else self.defaults.model

    def get_permission_mode(self, session_key: str) -> str:
        session = self._by_key.get(session_key)
        return session.permission_mode if session else self.defaults.permission_mode

    async def set_cwd(self, session_key: str, raw_path: str) -> tuple[bool, str]:
        session = self._by_key.get(session_key)
        if session is None:
            return False, "会话不存在，请先发送一条消息。"
        value = raw_path.strip().strip("\"'")
        if not value:
            return False, "目录不能为空。"

        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = Path(session.cwd) / candidate
        try:
            candidate = candidate.resolve()
        except OSError as exc:
            return False, f"无法解析目录：{exc}"
        if not candidate.exists():
            return False, f"目录不存在：{candidate}"
        if not candidate.is_dir():
            return False, f"不是目录：{candidate}"

        session.cwd = str(candidate)
        await self.invalidate_agent_handle(session_key)
        logger.info("session cwd changed key=%s cwd=%s", session_key, session.cwd)
        return True, session.cwd

    async def set_model(self, session_key: str, model: str) -> tuple[bool, str]:
        session = self._by_key.get(session_key)
        if session is None:
            return False, "会话不存在，请先发送一条消息。"
        value = model.strip()
        if not value:
            return False, "模型名称不能为空。"
        session.model = value
        await self._propagate(session, model=value)
        logger.info("session model changed key=%s model=%s", session_key, value)
        return True, value

    async def set_permission_mode(self, session_key: str, mode: str) -> tuple[bool, str]:
        session = self._by_key.get(session_key)
        if session is None:
            return False, "会话不存在，请先发送一条消息。"
        value = normalize_permission_mode(mode)
        if value is None:
            return False, f"无效的权限模式：{mode.strip()}，可选值：{', '.join(PERMISSION_MODES)}"
        session.permission_mode = value
        await self._propagate(session, permission_mode=value)
        logger.info("session permission mode changed key=%s mode=%s", session_key, value)
        return True, value

    async def _propagate(self, session: UserSession, **changes: str) -> None:
        handle = session.agent_handle
        if handle is None or self.backend is None:
            return
        ok = await self.backend.reconfigure(handle, **changes)
        if not ok:
            # Next prompt opens a fresh handle with the new settings.
            await self.invalidate_agent_handle(session.session_key)

    async def ensure_agent_handle(self, session_key: str) -> Any:
        await self._close_pending()
        session = self._by_key.get(session_key)
        if session is None:
            raise KeyError(session_key)
        if session.agent_handle is not None:
            return session.agent_handle
        if self.backend is None:
            raise RuntimeError("no agent backend configured")

        handle = await self.backend.open(session.agent_options())
        # Other events may have run while the handle was connecting.
        if session.agent_handle is not None:
            logger.info("concurrent agent handle open key=%s, closing the extra one", session_key)
            await self.backend.close(handle)
            return session.agent_handle
        if self._by_key.get(session_key) is not session:
            # Session was reset or replaced meanwhile; the handle serves this run only.
            self._pending_close.append(handle)
            return handle
        session.agent_handle = handle
        return handle

    async def invalidate_agent_handle(self, session_key: str) -> None:
        session = self._by_key.get(session_key)
        if session is None or session.agent_handle is None:
            return
        handle = session.agent_handle
        session.agent_handle = None
        if self.backend is not None:
            await self.backend.close(handle)

    async def clear_session(self, session_key: str) -> bool:
        session = self._by_key.pop(session_key, None)
        if session is None:
            return False
        if self._by_identity.get(session.identity) is session:
            del self._by_identity[session.identity]
        if session.agent_handle is not None:
            self._pending_close.append(session.agent_handle)
            session.agent_handle = None
        await self._close_pending()
        return True

    async def close_all(self) -> None:
        for session in self._by_identity.values():
            if session.agent_handle is not None:
                self._pending_close.append(session.agent_handle)
                session.agent_handle = None
        await self._close_pending()

    async def _close_pending(self) -> None:
        while self._pending_close:
            handle = self._pending_close.pop(0)
            if self.backend is not None:
                await self.backend.close(handle)
