from relay_core.api import service
from relay_core.auth.credential_store import CredentialStore
from relay_core.client.conversation_client import ConversationClient
from relay_core.infrastructure.storage.json_store import JsonConversationRepository

from fakes import (
    ClientSettings,
    FakeTransport,
    SequenceAuthenticator,
    StoreSettings,
    assistant_event,
    conversation_payload,
)


def _install(monkeypatch, transport):
    client = ConversationClient(
        CredentialStore(SequenceAuthenticator("tok-1"), settings=StoreSettings()),
        transport=transport,
        repository=JsonConversationRepository(persist=False),
        settings=ClientSettings(),
    )
    monkeypatch.setattr(service, "_client", client)
    return client


def test_send_message_blocks_until_reply(monkeypatch):
    transport = FakeTransport(
        streams=[[assistant_event("c9", "a1", "pong"), "[DONE]"]],
        history=[{"id": "c9", "title": "Ping", "create_time": 1700000000}],
    )
    _install(monkeypatch, transport)
    reply = service.send_message("ping", timeout=5)
    assert reply["conversation_id"] == "c9"
    assert reply["reply"] == "pong"
    assert [m["role"] for m in reply["messages"]] == ["user", "assistant"]
    listing = service.list_conversations(limit=5)
    assert listing["items"][0]["id"] == "c9"
    service.reset_default_client()
    assert service._client is None


def test_get_conversation_messages_and_models(monkeypatch):
    transport = FakeTransport(
        conversations={"c1": conversation_payload("c1", texts=("q", "a"))},
        models={"models": [{"slug": "auto", "max_tokens": 100, "title": "Auto", "tags": ["b", "a"]}]},
    )
    _install(monkeypatch, transport)
    messages = service.get_conversation_messages("c1")
    assert [m["content"] for m in messages] == ["q", "a"]
    models = service.list_models()
    assert models == [{"slug": "auto", "title": "Auto", "max_tokens": 100, "tags": ["a", "b"]}]
    service.reset_default_client()
    assert service._client is None
