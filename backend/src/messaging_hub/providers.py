from __future__ import annotations

import http.client
import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Protocol

from .channels import ChannelRecord
from .config import Settings
from .conversations import ConversationRecord
from .errors import ProviderFault, UnsupportedFault


@dataclass(frozen=True)
class DeliveryReceipt:
    provider_message_id: str | None
    raw: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(Protocol):
    provider_type: str

    def send(self, channel: ChannelRecord, conversation: ConversationRecord, text: str) -> DeliveryReceipt: ...


class TelegramAdapter:
    """Sends replies through the Telegram Bot API ``sendMessage`` method."""

    provider_type = "telegram"

    def __init__(
        self,
        *,
        base_url: str = "https://api.telegram.org",
        mock_token_prefix: str = "test_",
        timeout_seconds: float = 10.0,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be greater than zero")
        self._base_url = stripped_url
        self._mock_token_prefix = mock_token_prefix
        self._timeout_seconds = timeout_seconds

    def send(self, channel: ChannelRecord, conversation: ConversationRecord, text: str) -> DeliveryReceipt:
        bot_token = channel.credential("botToken")
        if bot_token is None:
            raise ProviderFault(
                "missing_credential",
                f"channel {channel.id} has no botToken",
                provider=self.provider_type,
            )

        if self._mock_token_prefix and bot_token.startswith(self._mock_token_prefix):
            return DeliveryReceipt(provider_message_id=None, raw={"mocked": True})

        response_data = self._post(
            bot_token,
            "sendMessage",
            {"chat_id": conversation.external_thread_id, "text": text},
        )
        if response_data.get("ok") is not True:
            description = response_data.get("description") or "ok=false"
            raise ProviderFault(
                "provider_rejected",
                f"Telegram rejected sendMessage: {description}",
                provider=self.provider_type,
                status=response_data.get("error_code"),
            )

        result = response_data.get("result")
        message_id = result.get("message_id") if isinstance(result, dict) else None
        return DeliveryReceipt(
            provider_message_id=str(message_id) if message_id is not None else None,
            raw=response_data,
        )

    def _post(self, bot_token: str, method: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST a Bot API method. The URL embeds the token, so it never reaches an error message."""
        url = f"{self._base_url}/bot{bot_token}/{method}"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = response.read().decode("utf-8")
                status = getattr(response, "status", 200)
        except urllib.error.HTTPError as exc:
            raise ProviderFault(
                "provider_rejected",
                f"HTTP {exc.code}: {exc.reason}",
                provider=self.provider_type,
                status=exc.code,
            ) from exc
        except urllib.error.URLError as exc:
            raise ProviderFault(
                "provider_unreachable",
                f"Connection error: {exc.reason}",
                provider=self.provider_type,
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ProviderFault(
                "provider_unreachable",
                f"Request timed out: {exc}",
                provider=self.provider_type,
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            # Raised while reading the response, outside urllib's URLError wrapping.
            raise ProviderFault(
                "provider_unreachable",
                f"Connection error: {exc.__class__.__name__}",
                provider=self.provider_type,
            ) from exc

        try:
            parsed = json.loads(payload)
        except ValueError as exc:
            raise ProviderFault(
                "provider_rejected",
                "Telegram returned a non-JSON body",
                provider=self.provider_type,
                status=status,
            ) from exc
        if not isinstance(parsed, dict):
            raise ProviderFault(
                "provider_rejected",
                "Telegram returned an unexpected body",
                provider=self.provider_type,
                status=status,
            )
        return parsed


class AdapterRegistry:
    def __init__(self, adapters: list[ProviderAdapter] | None = None) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider_type] = adapter

    def get(self, provider_type: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider_type)
        if adapter is None:
            raise UnsupportedFault(
                "unsupported_provider",
                f"no outbound adapter configured for provider: {provider_type}",
            )
        return adapter

    def provider_types(self) -> list[str]:
        return sorted(self._adapters)


def build_adapter_registry(settings: Settings) -> AdapterRegistry:
    return AdapterRegistry(
        [
            TelegramAdapter(
                base_url=settings.telegram_api_base_url,
                mock_token_prefix=settings.telegram_mock_token_prefix,
                timeout_seconds=settings.provider_timeout_seconds,
            ),
        ]
    )
