from __future__ import annotations

from .channels import ChannelRecord, ChannelRepository
from .conversations import ConversationRecord, ConversationRepository
from .errors import NotFoundFault
from .ledger import MessageLedger, MessageRecord
from .models import (
    ChannelSnapshot,
    ConversationListResponse,
    ConversationSummary,
    MessageItem,
    MessageListResponse,
    Participants,
)

CONVERSATION_LIMIT_DEFAULT = 20
MESSAGE_LIMIT_DEFAULT = 50
LIMIT_MAX = 100


def clamp_limit(value: int | None, *, default: int, maximum: int = LIMIT_MAX) -> int:
    if value is None:
        return default
    return max(1, min(int(value), maximum))


def preview(text: str, *, limit: int = 120) -> str:
    clean = " ".join(text.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."


class InboxService:
    def __init__(
        self,
        *,
        channels: ChannelRepository,
        conversations: ConversationRepository,
        ledger: MessageLedger,
    ) -> None:
        self._channels = channels
        self._conversations = conversations
        self._ledger = ledger

    def list_conversations(self, *, tenant_id: str, limit: int | None = None) -> ConversationListResponse:
        effective_limit = clamp_limit(limit, default=CONVERSATION_LIMIT_DEFAULT)
        conversations = self._conversations.list_for_tenant(tenant_id, limit=effective_limit)
        conversation_ids = [value.id for value in conversations]
        latest = self._ledger.latest_per_conversation(tenant_id=tenant_id, conversation_ids=conversation_ids)
        channels = self._channels.get_many_for_tenant(tenant_id, {value.channel_id for value in conversations})
        items = [
            self._to_summary(value, channels.get(value.channel_id), latest.get(value.id))
            for value in conversations
        ]
        return ConversationListResponse(items=items, next_cursor=None)

    def list_messages(
        self,
        *,
        tenant_id: str,
        conversation_id: str,
        limit: int | None = None,
    ) -> MessageListResponse:
        conversation = self._conversations.get(conversation_id, tenant_id)
        if conversation is None:
            raise NotFoundFault("conversation_not_found", f"conversation not found: {conversation_id}")
        effective_limit = clamp_limit(limit, default=MESSAGE_LIMIT_DEFAULT)
        messages = self._ledger.list_messages(
            tenant_id=tenant_id,
            conversation_id=conversation.id,
            limit=effective_limit,
        )
        return MessageListResponse(items=[to_message_item(value) for value in messages], next_cursor=None)

    @staticmethod
    def _to_summary(
        record: ConversationRecord,
        channel: ChannelRecord | None,
        latest: MessageRecord | None,
    ) -> ConversationSummary:
        snapshot = None
        if channel is not None:
            snapshot = ChannelSnapshot(id=channel.id, type=channel.provider_type, display_name=channel.display_name)
        return ConversationSummary(
            id=record.id,
            channel=snapshot,
            external_thread_id=record.external_thread_id,
            participants=Participants(
                external_user_id=record.participants.get("externalUserId"),
                external_username=record.participants.get("externalUsername"),
            ),
            last_message_at=record.last_message_at,
            last_message_preview=preview(latest.text) if latest is not None else None,
            unread_count=0,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


def to_message_item(record: MessageRecord) -> MessageItem:
    return MessageItem(
        id=record.id,
        conversation_id=record.conversation_id,
        channel_id=record.channel_id,
        direction=record.direction,
        provider=record.provider,
        provider_message_id=record.provider_message_id,
        text=record.text,
        raw=record.raw,
        created_at=record.created_at,
    )
