from __future__ import annotations


MAX_HISTORY_ENTRIES = 20
PROMPT_HISTORY_ENTRIES = 10


class ConversationHistory:
    """Bounded per-session log of prior exchanges, keyed by session key."""

    def __init__(self) -> None:
        self._entries: dict[str, list[str]] = {}

    def append(self, session_key: str, user_text: str, agent_text: str) -> None:
        entries = self._entries.setdefault(session_key, [])
        entries.append(f"User: {user_text}")
        entries.append(f"Assistant: {agent_text}")
        if len(entries) > MAX_HISTORY_ENTRIES:
            del entries[: len(entries) - MAX_HISTORY_ENTRIES]

    def get(self, session_key: str) -> list[str]:
        return list(self._entries.get(session_key, []))

    def clear(self, session_key: str) -> None:
        self._entries.pop(session_key, None)

    def build_prompt(self, session_key: str, current_text: str) -> str:
        recent = self._entries.get(session_key, [])[-PROMPT_HISTORY_ENTRIES:]
        return "\n\n".join([*recent, current_text])
