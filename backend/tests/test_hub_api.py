from __future__ import annotations

import os
import urllib.error
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from messaging_hub import api as api_module
from messaging_hub.config import get_settings
from messaging_hub.main import create_app
from messaging_hub.principal_tokens import create_principal, encode_principal_token

PRINCIPAL_SECRET = "test-principal-secret"


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def _client(**env: str | None) -> TestClient:
    overrides = {
        "RUNTIME_SECRET_GUARD_MODE": "off",
        "PRINCIPAL_TOKEN_SECRET": PRINCIPAL_SECRET,
        "HUB_STORE_BACKEND": "inmemory",
        "INBOUND_DEDUP_ENABLED": "true",
        "WEBHOOK_SECRET_MODE": "off",
        **env,
    }
    previous = {name: _set_env(name, value) for name, value in overrides.items()}
    try:
        api_module.configure_runtime(get_settings())
        api_module.reset_runtime_state_for_tests()
        return TestClient(create_app())
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def _headers(
    tenant_id: str | None = "tenant-a",
    roles: frozenset[str] = frozenset({"tenant_admin"}),
) -> dict[str, str]:
    principal = create_principal(user_id=f"user-{tenant_id}", tenant_id=tenant_id, roles=roles, ttl_minutes=30)
    token = encode_principal_token(principal, secret=PRINCIPAL_SECRET)
    return {"Authorization": f"Bearer {token}"}


def _create_channel(
    client: TestClient,
    *,
    tenant_id: str = "tenant-a",
    bot_token: str = "test_bot_token",
    external_id: str = "support_bot",
    **extra_credentials: str,
) -> str:
    response = client.post(
        "/tenant/channels",
        json={
            "providerType": "telegram",
            "displayName": "Support bot",
            "externalId": external_id,
            "credentials": {"botToken": bot_token, **extra_credentials},
        },
        headers=_headers(tenant_id),
    )
    assert response.status_code == 201
    body = response.json()
    assert body["credentialKeys"] == sorted({"botToken", *extra_credentials})
    assert "credentials" not in body
    return body["id"]


def _telegram_update(*, message_id: int = 77, chat_id: int = 555000111, text: str = "hello") -> dict:
    return {
        "update_id": 10_000 + message_id,
        "message": {
            "message_id": message_id,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": chat_id, "username": "ana_b"},
            "date": 1760000000,
            "text": text,
        },
    }


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _only_conversation(client: TestClient, tenant_id: str = "tenant-a") -> dict:
    response = client.get("/tenant/conversations", headers=_headers(tenant_id))
    assert response.status_code == 200
    items = response.json()["items"]
    assert len(items) == 1
    return items[0]


def test_inbound_message_appears_in_tenant_inbox() -> None:
    client = _client()
    channel_id = _create_channel(client)

    webhook = client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update(text="hi, is anyone there?"))
    assert webhook.status_code == 200
    assert webhook.json() == {"ok": True}

    conversation = _only_conversation(client)
    assert conversation["externalThreadId"] == "555000111"
    assert conversation["channel"] == {"id": channel_id, "type": "telegram", "displayName": "Support bot"}
    assert conversation["participants"] == {"externalUserId": "555000111", "externalUsername": "ana_b"}
    assert conversation["lastMessagePreview"] == "hi, is anyone there?"
    assert conversation["unreadCount"] == 0

    messages = client.get(f"/tenant/conversations/{conversation['id']}/messages", headers=_headers())
    assert messages.status_code == 200
    body = messages.json()
    assert body["nextCursor"] is None
    assert len(body["items"]) == 1
    message = body["items"][0]
    assert message["direction"] == "inbound"
    assert message["providerMessageId"] == "77"
    assert message["channelId"] == channel_id
    assert message["raw"]["update_id"] == 10_077


def test_redelivered_update_is_acknowledged_once() -> None:
    client = _client()
    channel_id = _create_channel(client)

    first = client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update())
    second = client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update())

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == {"ok": True, "duplicate": True}

    conversation = _only_conversation(client)
    messages = client.get(f"/tenant/conversations/{conversation['id']}/messages", headers=_headers())
    assert len(messages.json()["items"]) == 1


def test_redelivered_update_is_appended_again_when_dedup_disabled() -> None:
    client = _client(INBOUND_DEDUP_ENABLED="false")
    channel_id = _create_channel(client)

    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update())
    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update())

    conversation = _only_conversation(client)
    messages = client.get(f"/tenant/conversations/{conversation['id']}/messages", headers=_headers())
    assert len(messages.json()["items"]) == 2


def test_same_message_id_in_two_chats_is_not_a_duplicate() -> None:
    client = _client()
    channel_id = _create_channel(client)

    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update(message_id=1, chat_id=100))
    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update(message_id=1, chat_id=200))

    response = client.get("/tenant/conversations", headers=_headers())
    assert len(response.json()["items"]) == 2


def test_non_message_update_is_ignored_without_writes() -> None:
    client = _client()
    channel_id = _create_channel(client)

    response = client.post(
        f"/webhooks/telegram/{channel_id}",
        json={"update_id": 1, "callback_query": {"id": "cb-1", "data": "x"}},
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True, "ignored": True}
    assert client.get("/tenant/conversations", headers=_headers()).json()["items"] == []


def test_webhook_rejections_map_to_http_status() -> None:
    client = _client()
    channel_id = _create_channel(client)
    update = _telegram_update()

    assert client.post(f"/webhooks/telegram/{'f' * 24}", json=update).status_code == 404
    assert client.post("/webhooks/telegram/not-an-id", json=update).status_code == 400
    assert client.post(f"/webhooks/whatsapp/{channel_id}", json=update).status_code == 400
    assert client.post(f"/webhooks/messenger/{channel_id}", json=update).status_code == 404

    malformed = client.post(f"/webhooks/telegram/{channel_id}", json={"message": {"message_id": 1}})
    assert malformed.status_code == 400
    assert malformed.json()["detail"]["error"] == "bad_payload"

    not_json = client.post(
        f"/webhooks/telegram/{channel_id}",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert not_json.status_code == 400

    assert client.get("/tenant/conversations", headers=_headers()).json()["items"] == []


def test_inactive_channel_rejects_webhooks() -> None:
    client = _client()
    channel_id = _create_channel(client)

    patch_response = client.patch(
        f"/tenant/channels/{channel_id}",
        json={"isActive": False},
        headers=_headers(),
    )
    assert patch_response.status_code == 200
    assert patch_response.json()["isActive"] is False

    response = client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update())
    assert response.status_code == 404


def test_webhook_secret_enforced_when_channel_has_one() -> None:
    client = _client(WEBHOOK_SECRET_MODE="enforce")
    channel_id = _create_channel(client, webhookSecret="s3cret-value")

    missing = client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update(message_id=1))
    wrong = client.post(
        f"/webhooks/telegram/{channel_id}",
        json=_telegram_update(message_id=2),
        headers={"X-Telegram-Bot-Api-Secret-Token": "nope"},
    )
    right = client.post(
        f"/webhooks/telegram/{channel_id}",
        json=_telegram_update(message_id=3),
        headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret-value"},
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert right.status_code == 200


def test_webhook_secret_log_only_accepts_mismatch() -> None:
    client = _client(WEBHOOK_SECRET_MODE="log_only")
    channel_id = _create_channel(client, webhookSecret="s3cret-value")

    response = client.post(
        f"/webhooks/telegram/{channel_id}",
        json=_telegram_update(),
        headers={"X-Telegram-Bot-Api-Secret-Token": "nope"},
    )

    assert response.status_code == 200


def test_tenants_never_see_each_others_conversations() -> None:
    client = _client()
    channel_id = _create_channel(client)
    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update())
    conversation = _only_conversation(client)

    other_headers = _headers("tenant-b")
    assert client.get("/tenant/conversations", headers=other_headers).json()["items"] == []
    assert client.get(f"/tenant/conversations/{conversation['id']}/messages", headers=other_headers).status_code == 404
    reply = client.post(
        f"/tenant/conversations/{conversation['id']}/messages",
        json={"text": "not yours"},
        headers=other_headers,
    )
    assert reply.status_code == 404
    assert client.patch(
        f"/tenant/channels/{channel_id}",
        json={"isActive": False},
        headers=other_headers,
    ).status_code == 404


def test_reply_with_mock_token_is_recorded_and_touches_conversation() -> None:
    client = _client()
    channel_id = _create_channel(client)
    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update())
    before = _only_conversation(client)

    reply = client.post(
        f"/tenant/conversations/{before['id']}/messages",
        json={"text": "  Hi! How can we help?  "},
        headers=_headers(roles=frozenset({"tenant_agent"})),
    )

    assert reply.status_code == 201
    message = reply.json()
    assert message["direction"] == "outbound"
    assert message["text"] == "Hi! How can we help?"
    assert message["providerMessageId"] is None
    assert message["raw"] == {"mocked": True}

    after = _only_conversation(client)
    assert _parse_time(after["lastMessageAt"]) >= _parse_time(before["lastMessageAt"])
    assert after["lastMessagePreview"] == "Hi! How can we help?"

    messages = client.get(f"/tenant/conversations/{before['id']}/messages", headers=_headers()).json()["items"]
    assert [value["direction"] for value in messages] == ["inbound", "outbound"]


@patch("messaging_hub.providers.urllib.request.urlopen")
def test_reply_provider_failure_leaves_ledger_unchanged(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("connection refused")
    client = _client()
    channel_id = _create_channel(client, bot_token="123456:live-token")
    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update())
    conversation = _only_conversation(client)

    reply = client.post(
        f"/tenant/conversations/{conversation['id']}/messages",
        json={"text": "hello?"},
        headers=_headers(),
    )

    assert reply.status_code == 500
    assert reply.json()["detail"]["error"] == "provider_unreachable"
    assert "live-token" not in reply.text
    messages = client.get(f"/tenant/conversations/{conversation['id']}/messages", headers=_headers()).json()["items"]
    assert [value["direction"] for value in messages] == ["inbound"]


def test_reply_validation_failures() -> None:
    client = _client()
    channel_id = _create_channel(client)
    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update())
    conversation = _only_conversation(client)
    url = f"/tenant/conversations/{conversation['id']}/messages"

    blank = client.post(url, json={"text": "   "}, headers=_headers())
    assert blank.status_code == 400
    assert blank.json()["detail"]["error"] == "empty_text"

    too_long = client.post(url, json={"text": "x" * 4097}, headers=_headers())
    assert too_long.status_code == 400
    assert too_long.json()["detail"]["error"] == "text_too_long"

    assert client.post(url, json={}, headers=_headers()).status_code == 400
    assert client.post("/tenant/conversations/not-an-id/messages", json={"text": "hi"}, headers=_headers()).status_code == 400
    assert client.post(f"/tenant/conversations/{'0' * 24}/messages", json={"text": "hi"}, headers=_headers()).status_code == 404


def test_reply_on_channel_without_adapter_is_unsupported() -> None:
    client = _client()
    created = client.post(
        "/tenant/channels",
        json={"providerType": "messenger", "displayName": "Page", "externalId": "page-1", "credentials": {}},
        headers=_headers(),
    )
    assert created.status_code == 201
    conversation = api_module.conversation_repo.resolve(
        tenant_id="tenant-a",
        channel_id=created.json()["id"],
        external_thread_id="psid-1",
        participants_hint={},
    )

    reply = client.post(f"/tenant/conversations/{conversation.id}/messages", json={"text": "hi"}, headers=_headers())

    assert reply.status_code == 400
    assert reply.json()["detail"]["error"] == "unsupported_provider"


def test_list_limits_are_clamped() -> None:
    client = _client()
    channel_id = _create_channel(client)
    for index in range(3):
        client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update(message_id=index, chat_id=100 + index))
    conversation = client.get("/tenant/conversations", headers=_headers()).json()["items"][0]
    for index in range(3):
        client.post(
            f"/webhooks/telegram/{channel_id}",
            json=_telegram_update(message_id=50 + index, chat_id=int(conversation["externalThreadId"]), text=f"m{index}"),
        )

    assert len(client.get("/tenant/conversations?limit=0", headers=_headers()).json()["items"]) == 1
    assert len(client.get("/tenant/conversations?limit=500", headers=_headers()).json()["items"]) == 3
    assert client.get("/tenant/conversations?limit=abc", headers=_headers()).status_code == 400

    url = f"/tenant/conversations/{conversation['id']}/messages"
    newest = client.get(f"{url}?limit=2", headers=_headers()).json()["items"]
    assert [value["text"] for value in newest] == ["m1", "m2"]
    assert len(client.get(f"{url}?limit=-5", headers=_headers()).json()["items"]) == 1


def test_conversations_sorted_by_latest_activity() -> None:
    client = _client()
    channel_id = _create_channel(client)
    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update(message_id=1, chat_id=100))
    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update(message_id=2, chat_id=200))
    client.post(f"/webhooks/telegram/{channel_id}", json=_telegram_update(message_id=3, chat_id=100))

    items = client.get("/tenant/conversations", headers=_headers()).json()["items"]

    assert [value["externalThreadId"] for value in items] == ["100", "200"]


def test_auth_failures() -> None:
    client = _client()

    assert client.get("/tenant/conversations").status_code == 401
    assert client.get("/tenant/conversations", headers={"Authorization": "Bearer junk.sig"}).status_code == 401
    assert client.get("/tenant/conversations", headers=_headers(tenant_id=None)).status_code == 403
    assert client.get(
        "/tenant/conversations",
        headers=_headers(roles=frozenset({"platform_admin"})),
    ).status_code == 403

    agent = _headers(roles=frozenset({"tenant_agent"}))
    assert client.get("/tenant/conversations", headers=agent).status_code == 200
    assert client.post(
        "/tenant/channels",
        json={"providerType": "telegram", "displayName": "x", "externalId": "y"},
        headers=agent,
    ).status_code == 403


def test_me_and_channel_listing() -> None:
    client = _client()
    channel_id = _create_channel(client)

    me = client.get("/me", headers=_headers())
    assert me.status_code == 200
    assert me.json()["tenantId"] == "tenant-a"
    assert me.json()["roles"] == ["tenant_admin"]

    listing = client.get("/tenant/channels", headers=_headers()).json()["items"]
    assert [value["id"] for value in listing] == [channel_id]
    assert client.get("/tenant/channels", headers=_headers("tenant-b")).json()["items"] == []

    duplicate = client.post(
        "/tenant/channels",
        json={"providerType": "telegram", "displayName": "Again", "externalId": "support_bot"},
        headers=_headers(),
    )
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"]["error"] == "channel_exists"

    assert client.get("/healthz").json() == {"ok": True}


@pytest.mark.parametrize("bad_id", ["0x" + "a" * 22, "aaaa_aaaa_aaaa_aaaa_aaaa", "-" + "a" * 23])
def test_non_hex_ids_are_rejected_before_lookup(bad_id: str) -> None:
    client = _client()
    _create_channel(client)

    webhook = client.post(f"/webhooks/telegram/{bad_id}", json=_telegram_update())
    assert webhook.status_code == 400
    assert webhook.json()["detail"]["error"] == "bad_channel_id"

    messages = client.get(f"/tenant/conversations/{bad_id}/messages", headers=_headers())
    assert messages.status_code == 400
    assert messages.json()["detail"]["error"] == "bad_conversation_id"

    reply = client.post(f"/tenant/conversations/{bad_id}/messages", json={"text": "hi"}, headers=_headers())
    assert reply.status_code == 400
