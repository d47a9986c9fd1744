from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from runtime_config import PERMISSION_MODES
from session_registry import SessionRegistry, normalize_permission_mode


RESET_ALIASES = ("/new", "/reset", "/clear", "新对话", "新会话", "重新开始", "清空对话")
CWD_ALIASES = ("/cd", "/cwd", "切换目录")
PWD_ALIASES = ("/pwd", "当前目录")
STATUS_ALIASES = ("/status", "状态")
MODEL_ALIASES = ("/model", "切换模型")
MODE_ALIASES = ("/mode", "/permission", "权限模式")
HELP_ALIASES = ("/help", "帮助")

NEW_SESSION_REPLY = "已开始新的对话，之前的上下文已清空。"


@dataclass(frozen=True)
class CommandResult:
    handled: bool
    response: str | None = None


NOT_HANDLED = CommandResult(handled=False)


def is_reset_command(text: str) -> bool:
    lowered = text.lower()
    return any(alias in lowered for alias in RESET_ALIASES)


def match_prefix(text: str, aliases: tuple[str, ...]) -> str | None:
    """Return the argument after the first matching alias, or None.

    ``"/cd"`` and ``"/cd  /tmp"`` match ``/cd``; ``"/cdx"`` does not.
    """
    stripped = text.strip()
    lowered = stripped.lower()
    for alias in aliases:
        if lowered == alias:
            return ""
        if lowered.startswith(alias) and stripped[len(alias)].isspace():
            return stripped[len(alias) :].strip()
    return None


def match_exact(text: str, aliases: tuple[str, ...]) -> bool:
    return text.strip().lower() in aliases


class ControlCommandDispatcher:
    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry
        self._handlers: list[Callable[[str, str], Awaitable[CommandResult]]] = [
            self._handle_cwd,
            self._handle_pwd,
            self._handle_status,
            self._handle_model,
            self._handle_mode,
            self._handle_help,
        ]

    async def try_handle(self, text: str, session_key: str) -> CommandResult:
        for handler in self._handlers:
            result = await handler(text, session_key)
            if result.handled:
                return result
        return NOT_HANDLED

    async def _handle_cwd(self, text: str, session_key: str) -> CommandResult:
        arg = match_prefix(text, CWD_ALIASES)
        if arg is None:
            return NOT_HANDLED
        if not arg:
            cwd = self.registry.get_cwd(session_key)
            return CommandResult(True, f"当前工作目录：{cwd}\n用法：/cd <目录路径>")
        ok, detail = await self.registry.set_cwd(session_key, arg)
        if not ok:
            return CommandResult(True, f"切换目录失败：{detail}")
        return CommandResult(True, f"工作目录已切换为：{detail}")

    async def _handle_pwd(self, text: str, session_key: str) -> CommandResult:
        if not match_exact(text, PWD_ALIASES):
            return NOT_HANDLED
        return CommandResult(True, f"当前工作目录：{self.registry.get_cwd(session_key)}")

    async def _handle_status(self, text: str, session_key: str) -> CommandResult:
        if not match_exact(text, STATUS_ALIASES):
            return NOT_HANDLED
        lines = [
            "当前会话状态：",
            f"- 工作目录：{self.registry.get_cwd(session_key)}",
            f"- 模型：{self.registry.get_model(session_key) or '默认'}",
            f"- 权限模式：{self.registry.get_permission_mode(session_key)}",
        ]
        return CommandResult(True, "\n".join(lines))

    async def _handle_model(self, text: str, session_key: str) -> CommandResult:
        arg = match_prefix(text, MODEL_ALIASES)
        if arg is None:
            return NOT_HANDLED
        if not arg:
            model = self.registry.get_model(session_key) or "默认"
            return CommandResult(True, f"当前模型：{model}\n用法：/model <模型名称>")
        ok, detail = await self.registry.set_model(session_key, arg)
        if not ok:
            return CommandResult(True, f"切换模型失败：{detail}")
        return CommandResult(True, f"模型已切换为：{detail}")

    async def _handle_mode(self, text: str, session_key: str) -> CommandResult:
        arg = match_prefix(text, MODE_ALIASES)
        if arg is None:
            return NOT_HANDLED
        valid = ", ".join(PERMISSION_MODES)
        if not arg:
            mode = self.registry.get_permission_mode(session_key)
            return CommandResult(
                True,
                f"当前权限模式：{mode}\n可选值：{valid}\n用法：/mode <权限模式>",
            )
        if normalize_permission_mode(arg) is None:
            return CommandResult(True, f"无效的权限模式：{arg}\n可选值：{valid}")
        ok, detail = await self.registry.set_permission_mode(session_key, arg)
        if not ok:
            return CommandResult(True, f"切换权限模式失败：{detail}")
        return CommandResult(True, f"权限模式已切换为：{detail}")

    async def _handle_help(self, text: str, session_key: str) -> CommandResult:
        _ = session_key
        if not match_exact(text, HELP_ALIASES):
            return NOT_HANDLED
        lines = [
            "可用命令：",
            "- /new 开始新对话",
            "- /cd <目录> 切换工作目录",
            "- /pwd 查看当前工作目录",
            "- /status 查看会话状态",
            "- /model <模型> 切换模型",
            f"- /mode <{'|'.join(PERMISSION_MODES)}> 切换权限模式",
        ]
        return CommandResult(True, "\n".join(lines))
