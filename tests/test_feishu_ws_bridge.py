import asyncio
import json
from types import SimpleNamespace

import feishu_ws_bridge as bridge_mod
from message_content import ConversationType, MessageType, extract_content


def _event(message_type: str, content: dict, chat_type: str = "p2p", sender_type: str = "user"):  # type: ignore[no-untyped-def]
    return SimpleNamespace(
        event=SimpleNamespace(
            sender=SimpleNamespace(
                sender_type=sender_type,
                sender_id=SimpleNamespace(open_id="ou_1", user_id="u_1"),
            ),
            message=SimpleNamespace(
                message_id="om_1",
                chat_id="oc_chat",
                chat_type=chat_type,
                message_type=message_type,
                content=json.dumps(content, ensure_ascii=False),
            ),
        )
    )


def test_inbound_from_text_event_strips_mention_keys() -> None:
    message = bridge_mod.inbound_from_event(_event("text", {"text": "@_user_1 hello"}, chat_type="group"))
    assert message is not None
    assert message.message_id == "om_1"
    assert message.sender_id == "ou_1"
    assert message.conversation_id == "oc_chat"
    assert message.conversation_type is ConversationType.GROUP
    assert extract_content(message) == "hello"


def test_inbound_from_post_event_keeps_text_parts() -> None:
    content = {
        "zh_cn": {
            "title": "Report",
            "content": [
                [{"tag": "text", "text": "line one"}, {"tag": "img", "image_key": "img_1"}],
                [{"tag": "text", "text": "line two"}],
            ],
        }
    }
    message = bridge_mod.inbound_from_event(_event("post", content))
    assert message is not None
    assert message.message_type is MessageType.RICH_TEXT
    assert extract_content(message) == "Report\nline one\nline two"


def test_inbound_maps_media_types_to_placeholders() -> None:
    image = bridge_mod.inbound_from_event(_event("image", {"image_key": "img_1"}))
    sticker = bridge_mod.inbound_from_event(_event("sticker", {"file_key": "s_1"}))
    assert image is not None and image.message_type is MessageType.PICTURE
    assert extract_content(image) == "[图片]"
    assert sticker is not None and sticker.message_type is MessageType.UNKNOWN
    assert extract_content(sticker) == ""


def test_inbound_ignores_bot_senders() -> None:
    assert bridge_mod.inbound_from_event(_event("text", {"text": "hi"}, sender_type="bot")) is None


def test_format_mentions() -> None:
    assert bridge_mod.format_mentions("hi", None) == "hi"
    assert bridge_mod.format_mentions("hi", ["ou_1"]) == '<at user_id="ou_1"></at> hi'


def test_reply_sends_multiple_chunks_with_mention_on_first(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(bridge_mod, "HEARTBEAT_FILE", tmp_path / "heartbeat.json")
    bridge = bridge_mod.FeishuWSBridge(app_id="x", app_secret="y", max_reply_chars=5)
    sent: list[tuple[str, str]] = []
    monkeypatch.setattr(bridge, "_send_text_once", lambda chat_id, text: sent.append((chat_id, text)))

    asyncio.run(bridge.reply("oc_chat", ConversationType.GROUP, "1234567890", ["ou_1"]))

    assert sent == [("oc_chat", '<at user_id="ou_1"></at> 12345'), ("oc_chat", "67890")]


def test_reply_in_single_chat_has_no_mentions(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(bridge_mod, "HEARTBEAT_FILE", tmp_path / "heartbeat.json")
    bridge = bridge_mod.FeishuWSBridge(app_id="x", app_secret="y")
    sent: list[str] = []
    monkeypatch.setattr(bridge, "_send_text_once", lambda chat_id, text: sent.append(text))

    asyncio.run(bridge.reply("oc_chat", ConversationType.SINGLE, "hello", ["ou_1"]))

    assert sent == ["hello"]


def test_send_text_once_raises_on_api_failure() -> None:
    bridge = bridge_mod.FeishuWSBridge(app_id="x", app_secret="y")
    failed = SimpleNamespace(success=lambda: False, code=230002, msg="bot not in chat")
    bridge._client = SimpleNamespace(
        im=SimpleNamespace(v1=SimpleNamespace(message=SimpleNamespace(create=lambda request: failed)))
    )

    try:
        bridge._send_text_once("oc_chat", "hello")
    except RuntimeError as exc:
        assert "230002" in str(exc)
    else:
        raise AssertionError("expected RuntimeError")


class _FakeRouter:
    def __init__(self) -> None:
        self.events: list = []

    async def handle_event(self, message) -> None:  # type: ignore[no-untyped-def]
        self.events.append(message)


def test_event_handler_routes_message_without_running_loop() -> None:
    bridge = bridge_mod.FeishuWSBridge(app_id="x", app_secret="y")
    router = _FakeRouter()
    bridge.router = router  # type: ignore[assignment]

    bridge._event_handler(_event("text", {"text": "hello"}))

    assert [m.text for m in router.events] == ["hello"]


def test_event_handler_schedules_task_on_running_loop() -> None:
    bridge = bridge_mod.FeishuWSBridge(app_id="x", app_secret="y")
    router = _FakeRouter()
    bridge.router = router  # type: ignore[assignment]

    async def scenario() -> None:
        bridge._event_handler(_event("text", {"text": "hello"}))
        assert len(bridge._tasks) == 1
        await asyncio.gather(*list(bridge._tasks))

    asyncio.run(scenario())
    assert len(router.events) == 1
    assert bridge._tasks == set()


def test_event_handler_errors_are_contained(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(bridge_mod, "HEARTBEAT_FILE", tmp_path / "heartbeat.json")
    bridge = bridge_mod.FeishuWSBridge(app_id="x", app_secret="y")
    bridge.router = _FakeRouter()  # type: ignore[assignment]

    def broken(data):  # type: ignore[no-untyped-def]
        raise ValueError("bad event")

    monkeypatch.setattr(bridge_mod, "inbound_from_event", broken)
    bridge._event_handler(_event("text", {"text": "hello"}))

    assert json.loads((tmp_path / "heartbeat.json").read_text(encoding="utf-8"))["event"] == "event_handler_error"
