"""Provider webhook payloads -> normalized inbound events.

Every normalizer is a pure function of the parsed JSON body. Provider update
types that carry no message are reported as ``Ignored`` so the webhook can be
acknowledged and dropped; payloads missing the thread or message id are
``Malformed``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Union


@dataclass(frozen=True)
class NormalizedInbound:
    external_thread_id: str
    provider_message_id: str
    text: str
    participants_hint: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Ignored:
    reason: str


@dataclass(frozen=True)
class Malformed:
    reason: str


NormalizeResult = Union[NormalizedInbound, Ignored, Malformed]
Normalizer = Callable[[Mapping[str, Any]], NormalizeResult]


def _as_identifier(value: Any) -> str | None:
    # bool is an int subclass; a True chat id is garbage, not 1.
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, str)):
        normalized = str(value).strip()
        return normalized or None
    return None


def normalize_telegram(body: Mapping[str, Any]) -> NormalizeResult:
    message = body.get("message")
    if message is None:
        message = body.get("edited_message")
    if message is None:
        return Ignored(reason="not_a_message_update")
    if not isinstance(message, Mapping):
        return Malformed(reason="message_not_an_object")

    chat = message.get("chat")
    thread_id = _as_identifier(chat.get("id")) if isinstance(chat, Mapping) else None
    if thread_id is None:
        return Malformed(reason="chat_id_missing")

    message_id = _as_identifier(message.get("message_id"))
    if message_id is None:
        return Malformed(reason="message_id_missing")

    participants: dict[str, str] = {}
    sender = message.get("from")
    if isinstance(sender, Mapping):
        user_id = _as_identifier(sender.get("id"))
        if user_id is not None:
            participants["externalUserId"] = user_id
        username = sender.get("username")
        if isinstance(username, str) and username.strip():
            participants["externalUsername"] = username.strip()

    text = message.get("text")
    if not isinstance(text, str):
        text = message.get("caption")
    if not isinstance(text, str):
        text = ""

    return NormalizedInbound(
        external_thread_id=thread_id,
        provider_message_id=message_id,
        text=text,
        participants_hint=participants,
    )


NORMALIZERS: dict[str, Normalizer] = {
    "telegram": normalize_telegram,
}


def normalize(provider_type: str, body: Any) -> NormalizeResult:
    normalizer = NORMALIZERS.get(provider_type)
    if normalizer is None:
        return Malformed(reason="unsupported_provider")
    if not isinstance(body, Mapping):
        return Malformed(reason="body_not_an_object")
    return normalizer(body)
