from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any
from urllib import error, request
from urllib.parse import quote_plus


SIGNATURE_MAX_SKEW_MS = 3_600_000


def compute_signature(timestamp_ms: int | str, secret: str) -> str:
    """Base64 HMAC-SHA256 of ``"{timestamp}\\n{secret}"`` keyed by ``secret``."""
    string_to_sign = f"{timestamp_ms}\n{secret}"
    digest = hmac.new(secret.encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_callback_signature(
    timestamp_ms: str | None,
    sign: str | None,
    app_secret: str,
    now_ms: int | None = None,
) -> bool:
    if not timestamp_ms or not sign:
        return False
    try:
        ts = int(timestamp_ms)
    except ValueError:
        return False
    now = int(time.time() * 1000) if now_ms is None else now_ms
    if abs(now - ts) > SIGNATURE_MAX_SKEW_MS:
        return False
    return hmac.compare_digest(compute_signature(ts, app_secret), sign)


def build_at(
    at_user_ids: list[str] | None = None,
    at_mobiles: list[str] | None = None,
    is_at_all: bool = False,
) -> dict[str, Any] | None:
    if not (at_user_ids or at_mobiles or is_at_all):
        return None
    return {
        "atUserIds": list(at_user_ids or []),
        "atMobiles": list(at_mobiles or []),
        "isAtAll": bool(is_at_all),
    }


@dataclass(frozen=True)
class DingTalkClient:
    webhook: str = ""
    secret: str = ""
    timeout_seconds: int = 15

    def signed_url(self, timestamp_ms: int | None = None) -> str:
        if not self.secret:
            return self.webhook
        ts = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
        sign = quote_plus(compute_signature(ts, self.secret))
        separator = "&" if "?" in self.webhook else "?"
        return f"{self.webhook}{separator}timestamp={ts}&sign={sign}"

    def _post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        req = request.Request(
            url=url,
            data=body,
            headers={"Content-Type": "application/json;charset=utf-8"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as resp:  # noqa: S310
                raw = resp.read().decode("utf-8", errors="ignore")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            raise RuntimeError(f"DingTalk HTTP error: {exc.code} {detail}") from exc
        except error.URLError as exc:
            raise RuntimeError(f"DingTalk network error: {exc.reason}") from exc

        try:
            data = json.loads(raw or "{}")
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"DingTalk response JSON decode error: {raw[:200]}") from exc
        if isinstance(data, dict) and data.get("errcode", 0) != 0:
            raise RuntimeError(f"DingTalk send message error: {data}")
        return data if isinstance(data, dict) else {}

    def send_message(self, message: dict[str, Any], webhook: str | None = None) -> dict[str, Any]:
        # Session webhooks handed out with a callback are pre-authorized.
        url = webhook or self.signed_url()
        if not url:
            raise RuntimeError("DingTalk webhook is not configured")
        return self._post_json(url, message)

    def send_text(
        self,
        content: str,
        *,
        at_user_ids: list[str] | None = None,
        at_mobiles: list[str] | None = None,
        is_at_all: bool = False,
        webhook: str | None = None,
    ) -> dict[str, Any]:
        message: dict[str, Any] = {"msgtype": "text", "text": {"content": content}}
        at = build_at(at_user_ids, at_mobiles, is_at_all)
        if at:
            message["at"] = at
        return self.send_message(message, webhook=webhook)

    def send_markdown(
        self,
        title: str,
        text: str,
        *,
        at_user_ids: list[str] | None = None,
        at_mobiles: list[str] | None = None,
        is_at_all: bool = False,
        webhook: str | None = None,
    ) -> dict[str, Any]:
        message: dict[str, Any] = {"msgtype": "markdown", "markdown": {"title": title, "text": text}}
        at = build_at(at_user_ids, at_mobiles, is_at_all)
        if at:
            message["at"] = at
        return self.send_message(message, webhook=webhook)
