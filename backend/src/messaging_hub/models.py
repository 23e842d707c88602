from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ProviderType = Literal["telegram", "messenger"]
MessageDirection = Literal["inbound", "outbound"]

PROVIDER_TYPES: frozenset[str] = frozenset({"telegram", "messenger"})


class ApiModel(BaseModel):
    """Wire models serialize camelCase and accept either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Participants(ApiModel):
    external_user_id: str | None = None
    external_username: str | None = None


class ChannelSnapshot(ApiModel):
    id: str
    type: ProviderType
    display_name: str


class ConversationSummary(ApiModel):
    id: str
    channel: ChannelSnapshot | None
    external_thread_id: str
    participants: Participants
    last_message_at: datetime
    last_message_preview: str | None = None
    unread_count: int = 0
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(ApiModel):
    items: list[ConversationSummary]
    next_cursor: str | None = None


class MessageItem(ApiModel):
    id: str
    conversation_id: str
    channel_id: str
    direction: MessageDirection
    provider: ProviderType
    provider_message_id: str | None = None
    text: str
    raw: dict[str, Any] | None = None
    created_at: datetime


class MessageListResponse(ApiModel):
    items: list[MessageItem]
    next_cursor: str | None = None


class SendReplyRequest(ApiModel):
    text: str = Field(max_length=16384)


class WebhookAck(ApiModel):
    ok: bool = True
    ignored: bool | None = None
    duplicate: bool | None = None


class ChannelCreateRequest(ApiModel):
    provider_type: ProviderType
    display_name: str = Field(min_length=1, max_length=256)
    external_id: str = Field(min_length=1, max_length=256)
    credentials: dict[str, str] = Field(default_factory=dict)

    @field_validator("display_name", "external_id")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("text fields cannot be blank")
        return normalized

    @field_validator("credentials")
    @classmethod
    def _normalize_credentials(cls, value: dict[str, str]) -> dict[str, str]:
        normalized: dict[str, str] = {}
        for raw_key, raw_item in value.items():
            key = str(raw_key).strip()
            if not key:
                raise ValueError("credential keys cannot be blank")
            normalized[key] = str(raw_item).strip()
        return normalized


class ChannelUpdateRequest(ApiModel):
    is_active: bool


class ChannelItem(ApiModel):
    id: str
    provider_type: ProviderType
    display_name: str
    external_id: str
    credential_keys: list[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ChannelListResponse(ApiModel):
    items: list[ChannelItem]


class PrincipalResponse(ApiModel):
    user_id: str
    email: str | None
    tenant_id: str | None
    roles: list[str]
