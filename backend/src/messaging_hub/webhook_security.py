from __future__ import annotations

import hmac
import logging
from typing import Mapping

from .channels import ChannelRecord

logger = logging.getLogger(__name__)

TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


class WebhookVerification:
    def __init__(self, *, verified: bool, reason: str | None = None) -> None:
        self.verified = verified
        self.reason = reason


def header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def verify_webhook_secret(
    *,
    mode: str,
    channel: ChannelRecord,
    provided: str | None,
) -> WebhookVerification:
    """Compare the provider's shared secret header with the channel's ``webhookSecret``.

    Channels without a configured secret pass; ``log_only`` reports failures
    without rejecting.
    """
    if mode == "off":
        return WebhookVerification(verified=True)

    configured = channel.credential("webhookSecret")
    if configured is None:
        return WebhookVerification(verified=True)

    if provided is None:
        result = WebhookVerification(verified=False, reason="secret_missing")
    elif not hmac.compare_digest(configured.encode("utf-8"), provided.encode("utf-8")):
        result = WebhookVerification(verified=False, reason="secret_mismatch")
    else:
        return WebhookVerification(verified=True)

    if mode == "log_only":
        logger.warning(
            "webhook secret check failed channel=%s reason=%s (log_only)",
            channel.id,
            result.reason,
        )
        return WebhookVerification(verified=True, reason=result.reason)
    return result
