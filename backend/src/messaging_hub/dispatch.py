from __future__ import annotations

import logging

from .channels import ChannelRepository
from .conversations import ConversationRepository
from .errors import NotFoundFault, ProviderFault, StorageFault, ValidationFault
from .ledger import MessageLedger, MessageRecord
from .providers import AdapterRegistry

logger = logging.getLogger(__name__)

MAX_REPLY_LENGTH = 4096


class ReplyDispatcher:
    """Validate, send through the provider, then record what actually left the system.

    The message append happens before the conversation touch. A failed touch
    only leaves ``lastMessageAt`` stale; a failed send writes nothing.
    """

    def __init__(
        self,
        *,
        channels: ChannelRepository,
        conversations: ConversationRepository,
        ledger: MessageLedger,
        adapters: AdapterRegistry,
    ) -> None:
        self._channels = channels
        self._conversations = conversations
        self._ledger = ledger
        self._adapters = adapters

    def dispatch_reply(self, *, tenant_id: str, conversation_id: str, text: str) -> MessageRecord:
        body = text.strip()
        if not body:
            raise ValidationFault("empty_text", "text must not be empty")
        if len(body) > MAX_REPLY_LENGTH:
            raise ValidationFault("text_too_long", f"text must be at most {MAX_REPLY_LENGTH} characters")

        conversation = self._conversations.get(conversation_id, tenant_id)
        if conversation is None:
            raise NotFoundFault("conversation_not_found", f"conversation not found: {conversation_id}")

        channel = self._channels.get_for_tenant(conversation.channel_id, tenant_id)
        if channel is None:
            raise NotFoundFault("channel_not_found", f"channel not found for conversation: {conversation_id}")

        adapter = self._adapters.get(channel.provider_type)

        try:
            receipt = adapter.send(channel, conversation, body)
        except ProviderFault as exc:
            logger.warning(
                "reply send failed provider=%s code=%s status=%s channel=%s conversation=%s",
                exc.provider,
                exc.code,
                exc.status,
                channel.id,
                conversation.id,
            )
            raise

        try:
            appended = self._ledger.append(
                conversation,
                tenant_id=tenant_id,
                direction="outbound",
                provider=channel.provider_type,
                provider_message_id=receipt.provider_message_id,
                text=body,
                raw=receipt.raw,
            )
        except StorageFault:
            logger.error(
                "ledger gap: reply sent but not recorded provider=%s provider_message_id=%s conversation=%s",
                channel.provider_type,
                receipt.provider_message_id,
                conversation.id,
            )
            raise

        message = appended.message
        try:
            touched = self._conversations.touch(
                conversation_id=conversation.id,
                tenant_id=tenant_id,
                at=message.created_at,
            )
        except StorageFault:
            touched = False
        if not touched:
            logger.warning("conversation touch missed conversation=%s message=%s", conversation.id, message.id)
        return message
