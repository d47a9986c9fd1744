from message_content import (
    AUDIO_PLACEHOLDER,
    FILE_PLACEHOLDER,
    PICTURE_PLACEHOLDER,
    VIDEO_PLACEHOLDER,
    InboundMessage,
    MessageType,
    extract_content,
    sanitize_text,
)


def _message(message_type: MessageType, **kwargs) -> InboundMessage:  # type: ignore[no-untyped-def]
    return InboundMessage(
        message_id="m1",
        sender_id="u1",
        conversation_id="c1",
        message_type=message_type,
        **kwargs,
    )


def test_sanitize_text_strips_control_characters() -> None:
    assert sanitize_text("a\r\nb\x00c\x07\r\n") == "a\nbc\n"


def test_text_message_uses_text_field() -> None:
    assert extract_content(_message(MessageType.TEXT, text="  hello \r\n")) == "hello"


def test_rich_text_concatenates_only_text_parts_in_order() -> None:
    message = _message(
        MessageType.RICH_TEXT,
        rich_text=[
            {"text": "look at "},
            {"type": "picture", "downloadCode": "abc"},
            {"type": "text", "text": "this"},
            {"type": "a", "text": "http://example.com"},
        ],
    )
    assert extract_content(message) == "look at this"


def test_audio_prefers_recognition_transcript() -> None:
    assert extract_content(_message(MessageType.AUDIO, recognition="打开项目")) == "打开项目"
    assert extract_content(_message(MessageType.AUDIO)) == AUDIO_PLACEHOLDER
    assert extract_content(_message(MessageType.AUDIO, recognition="   ")) == AUDIO_PLACEHOLDER


def test_media_types_use_fixed_placeholders() -> None:
    assert extract_content(_message(MessageType.PICTURE, text="ignored")) == PICTURE_PLACEHOLDER
    assert extract_content(_message(MessageType.VIDEO)) == VIDEO_PLACEHOLDER
    assert extract_content(_message(MessageType.FILE)) == FILE_PLACEHOLDER


def test_unknown_type_falls_back_to_text_or_empty() -> None:
    assert MessageType.parse("interactiveCard") is MessageType.UNKNOWN
    assert MessageType.parse(None) is MessageType.UNKNOWN
    assert extract_content(_message(MessageType.UNKNOWN, text="fallback")) == "fallback"
    assert extract_content(_message(MessageType.UNKNOWN)) == ""
