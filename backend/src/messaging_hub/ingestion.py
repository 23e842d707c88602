from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from .channels import ChannelRepository
from .conversations import ConversationRepository
from .errors import StorageFault, ValidationFault
from .ledger import MessageLedger, inbound_dedup_key
from .models import PROVIDER_TYPES
from .normalizers import Ignored, Malformed, normalize
from .storage import is_object_id
from .webhook_security import verify_webhook_secret

logger = logging.getLogger(__name__)

IngestStatus = Literal["accepted", "ignored", "rejected"]


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    reason: str | None = None
    conversation_id: str | None = None
    message_id: str | None = None
    duplicate: bool = False

    @classmethod
    def rejected(cls, reason: str) -> IngestResult:
        return cls(status="rejected", reason=reason)


class InboundIngestionPipeline:
    def __init__(
        self,
        *,
        channels: ChannelRepository,
        conversations: ConversationRepository,
        ledger: MessageLedger,
        dedup_enabled: bool = True,
        webhook_secret_mode: str = "off",
    ) -> None:
        self._channels = channels
        self._conversations = conversations
        self._ledger = ledger
        self._dedup_enabled = dedup_enabled
        self._webhook_secret_mode = webhook_secret_mode

    def ingest(
        self,
        channel_id: str,
        provider_type: str,
        raw_body: Any,
        *,
        secret_token: str | None = None,
    ) -> IngestResult:
        if provider_type not in PROVIDER_TYPES:
            return self._reject("unsupported_provider", channel_id)
        if not is_object_id(channel_id):
            return self._reject("bad_channel_id", channel_id)

        try:
            channel = self._channels.get(channel_id)
        except StorageFault:
            logger.exception("channel lookup failed channel=%s", channel_id)
            return self._reject("storage_unavailable", channel_id)
        if channel is None or not channel.is_active or channel.provider_type != provider_type:
            return self._reject("channel_not_found", channel_id)

        verification = verify_webhook_secret(
            mode=self._webhook_secret_mode,
            channel=channel,
            provided=secret_token,
        )
        if not verification.verified:
            return self._reject(f"webhook_{verification.reason}", channel_id)

        normalized = normalize(provider_type, raw_body)
        if isinstance(normalized, Ignored):
            logger.debug("ignored %s update channel=%s reason=%s", provider_type, channel_id, normalized.reason)
            return IngestResult(status="ignored", reason=normalized.reason)
        if isinstance(normalized, Malformed):
            if normalized.reason == "unsupported_provider":
                return self._reject("unsupported_provider", channel_id)
            logger.warning("malformed %s payload channel=%s reason=%s", provider_type, channel_id, normalized.reason)
            return IngestResult.rejected("bad_payload")

        try:
            # Tenant comes from the channel, never from the payload.
            conversation = self._conversations.resolve(
                tenant_id=channel.tenant_id,
                channel_id=channel.id,
                external_thread_id=normalized.external_thread_id,
                participants_hint=normalized.participants_hint,
            )
            appended = self._ledger.append(
                conversation,
                tenant_id=channel.tenant_id,
                direction="inbound",
                provider=channel.provider_type,
                provider_message_id=normalized.provider_message_id,
                text=normalized.text,
                raw=dict(raw_body),
                dedup_key=(
                    inbound_dedup_key(conversation, normalized.provider_message_id)
                    if self._dedup_enabled
                    else None
                ),
            )
        except StorageFault:
            logger.exception("inbound ingestion failed channel=%s", channel_id)
            return self._reject("storage_unavailable", channel_id)
        except ValidationFault as exc:
            logger.error("inbound ingestion rejected channel=%s code=%s", channel_id, exc.code)
            return self._reject(exc.code, channel_id)

        if not appended.created:
            logger.info(
                "duplicate %s delivery channel=%s provider_message_id=%s",
                provider_type,
                channel_id,
                normalized.provider_message_id,
            )
        return IngestResult(
            status="accepted",
            conversation_id=conversation.id,
            message_id=appended.message.id,
            duplicate=not appended.created,
        )

    @staticmethod
    def _reject(reason: str, channel_id: str) -> IngestResult:
        logger.warning("webhook rejected channel=%s reason=%s", channel_id, reason)
        return IngestResult.rejected(reason)
