from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
BRIDGE_LOG_FILE_NAME = "agent_bridge.log"

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def configure_logging(log_dir: Path, level: str = "INFO") -> logging.Logger:
    """Attach file and console handlers to the root logger once per process."""
    log_dir.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if any(getattr(h, "_agent_bridge", False) for h in root.handlers):
        return root

    formatter = logging.Formatter(LOG_FORMAT)
    fh = logging.FileHandler(log_dir / BRIDGE_LOG_FILE_NAME, encoding="utf-8")
    fh.setFormatter(formatter)
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    for handler in (fh, sh):
        handler._agent_bridge = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root


def write_heartbeat(path: Path, event: str, conversation_id: str = "") -> None:
    payload = {
        "ts": _utc_now(),
        "event": event,
        "conversation_id": conversation_id,
        "pid": os.getpid(),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")


def read_heartbeat(path: Path, stale_seconds: int) -> dict[str, Any]:
    if not path.exists():
        return {"status": "unknown"}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        ts = datetime.fromisoformat(str(raw.get("ts")))
    except (OSError, ValueError, TypeError, AttributeError):
        return {"status": "unknown"}
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    age = int((datetime.now(timezone.utc) - ts).total_seconds())
    return {
        "status": "ok" if age <= stale_seconds else "stale",
        "event": raw.get("event", ""),
        "age_seconds": age,
    }


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if hasattr(value, "model_dump"):
        try:
            return _json_safe(value.model_dump())  # type: ignore[call-arg]
        except Exception:
            return str(value)
    if hasattr(value, "__dict__"):
        return _json_safe(dict(vars(value)))
    return str(value)


def serialize_message(message: Any) -> dict[str, Any]:
    payload: Any
    if hasattr(message, "model_dump"):
        try:
            payload = message.model_dump()  # type: ignore[call-arg]
        except Exception:
            payload = str(message)
    elif hasattr(message, "__dict__"):
        payload = dict(vars(message))
    else:
        payload = str(message)

    return {
        "type": type(message).__name__,
        "payload": _json_safe(payload),
    }


class AgentRunLogger:
    """JSONL trace of a single agent run: request, SDK messages, outcome."""

    def __init__(self, log_dir: Path, session_key: str = "") -> None:
        self.log_dir = log_dir
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        label = _SAFE_NAME.sub("_", session_key)[:40] or "run"
        self.path = self.log_dir / f"agent-{stamp}-{label}-{uuid4().hex[:8]}.jsonl"

    def log_event(self, event: str, data: dict[str, Any]) -> None:
        record = {"ts": _utc_now(), "event": event, **_json_safe(data)}
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, ensure_ascii=False) + "\n")
