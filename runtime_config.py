from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


PERMISSION_MODES = ("default", "plan", "auto-edit", "yolo")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class RuntimeConfig:
    session_timeout_ms: int = 1_800_000
    agent_cwd: str = ""
    agent_model: str = ""
    permission_mode: str = "default"
    max_turns: int = 30
    agent_timeout_seconds: int = 180
    max_reply_chars: int = 1500
    dingtalk_webhook: str = ""
    dingtalk_secret: str = ""
    dingtalk_app_secret: str = ""
    feishu_app_id: str = ""
    feishu_app_secret: str = ""
    feishu_encrypt_key: str = ""
    feishu_verification_token: str = ""
    anthropic_base_url: str = ""
    anthropic_auth_token: str = ""
    anthropic_api_key: str = ""
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    def resolved_cwd(self) -> str:
        if self.agent_cwd:
            return str(Path(self.agent_cwd).expanduser())
        return os.getcwd()

    def agent_env(self) -> dict[str, str]:
        env: dict[str, str] = {}
        if self.anthropic_base_url:
            env["ANTHROPIC_BASE_URL"] = self.anthropic_base_url
        if self.anthropic_auth_token:
            env["ANTHROPIC_AUTH_TOKEN"] = self.anthropic_auth_token
        if self.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = self.anthropic_api_key
        return env


def _parse_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}

    result: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        result[key.strip()] = value.strip().strip("\"'")
    return result


def _parse_positive_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return default
    return value


def _parse_permission_mode(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    if value in PERMISSION_MODES:
        return value
    return "default"


def _parse_log_level(raw: str | None) -> str:
    value = (raw or "").strip().upper()
    if value in LOG_LEVELS:
        return value
    return "INFO"


def load_runtime_config(env_file: Path) -> RuntimeConfig:
    file_env = _parse_env_file(env_file)

    def read(key: str) -> str | None:
        return os.getenv(key, file_env.get(key))

    def read_str(key: str) -> str:
        return (read(key) or "").strip()

    api_key = read_str("ANTHROPIC_API_KEY") or read_str("CLAUDE_API_KEY")
    return RuntimeConfig(
        session_timeout_ms=_parse_positive_int(read("SESSION_TIMEOUT_MS"), 1_800_000),
        agent_cwd=read_str("AGENT_CWD"),
        agent_model=read_str("AGENT_MODEL"),
        permission_mode=_parse_permission_mode(read("PERMISSION_MODE")),
        max_turns=_parse_positive_int(read("MAX_TURNS"), 30),
        agent_timeout_seconds=_parse_positive_int(read("AGENT_TIMEOUT_SECONDS"), 180),
        max_reply_chars=_parse_positive_int(read("MAX_REPLY_CHARS"), 1500),
        dingtalk_webhook=read_str("DINGTALK_WEBHOOK"),
        dingtalk_secret=read_str("DINGTALK_SECRET"),
        dingtalk_app_secret=read_str("DINGTALK_APP_SECRET"),
        feishu_app_id=read_str("FEISHU_APP_ID"),
        feishu_app_secret=read_str("FEISHU_APP_SECRET"),
        feishu_encrypt_key=read_str("FEISHU_ENCRYPT_KEY"),
        feishu_verification_token=read_str("FEISHU_VERIFICATION_TOKEN"),
        anthropic_base_url=read_str("ANTHROPIC_BASE_URL"),
        anthropic_auth_token=read_str("ANTHROPIC_AUTH_TOKEN"),
        anthropic_api_key=api_key,
        host=read_str("HOST") or "0.0.0.0",
        port=_parse_positive_int(read("PORT"), 3000),
        log_level=_parse_log_level(read("LOG_LEVEL")),
    )
