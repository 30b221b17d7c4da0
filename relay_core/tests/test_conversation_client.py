import logging
import threading

import pytest

from relay_core.auth.credential_store import CredentialStore
from relay_core.client.conversation_client import ConversationClient
from relay_core.domain.exceptions import (
    AuthenticationFailed,
    BusinessError,
    LoginCancelled,
    MalformedResponse,
    NotFound,
    TransportError,
    ValidationError,
)
from relay_core.infrastructure.storage.json_store import JsonConversationRepository
from relay_core.streaming.dispatcher import StreamCallbacks, StreamState

from fakes import (
    ClientSettings,
    FakeTransport,
    RecordingHandler,
    SequenceAuthenticator,
    StoreSettings,
    assistant_event,
    conversation_payload,
)


def _client(transport, auth=None):
    auth = auth or SequenceAuthenticator("tok-1", "tok-2", "tok-3")
    store = CredentialStore(auth, settings=StoreSettings())
    repo = JsonConversationRepository(persist=False)
    return ConversationClient(store, transport=transport, repository=repo, settings=ClientSettings()), auth


def _history(n):
    return [{"id": f"c{i}", "title": f"t{i}", "create_time": 1700000000 - i} for i in range(n)]


def test_send_new_conversation_completes_and_is_cached():
    transport = FakeTransport(streams=[[assistant_event("c-new", "a1", "hel"), assistant_event("c-new", "a1", "lo"), "[DONE]"]])
    client, _ = _client(transport)
    handler = RecordingHandler()
    handle = client.send_conversation("hi", handler)
    conv = handle.wait(5)
    client.close(wait=True)
    assert handle.state is StreamState.COMPLETED
    assert len(handler.completed) == 1 and handler.errors == []
    assert conv.messages[-1].text == "hello"
    assert transport.stream_bodies[0]["model"] == "auto"
    assert "conversation_id" not in transport.stream_bodies[0]
    cached = client.repository.get("c-new")
    assert [m.id for m in cached.messages] == [m.id for m in conv.messages]


def test_send_continuation_uses_last_message_as_parent():
    transport = FakeTransport(
        conversations={"c1": conversation_payload("c1", texts=("q", "a"))},
        streams=[[assistant_event("c1", "a2", "more"), "[DONE]"]],
    )
    client, _ = _client(transport)
    handler = RecordingHandler()
    conv = client.send_conversation("again", handler, conversation_id="c1").wait(5)
    client.close(wait=True)
    body = transport.stream_bodies[0]
    assert body["conversation_id"] == "c1"
    assert body["parent_message_id"] == "c1-m1"
    assert [m.text for m in conv.messages] == ["q", "a", "again", "more"]


def test_send_unknown_conversation_fails_with_not_found():
    transport = FakeTransport()
    client, _ = _client(transport)
    handler = RecordingHandler()
    handle = client.send_conversation("hi", handler, conversation_id="missing")
    with pytest.raises(NotFound):
        handle.wait(5)
    client.close(wait=True)
    assert handler.completed == []
    assert len(handler.errors) == 1
    assert handler.errors[0].code == "CONVERSATION_NOT_FOUND"
    assert transport.post_count() == 0


def test_send_unknown_model_fails_with_not_found():
    transport = FakeTransport(models={"models": [{"slug": "gpt-4o", "max_tokens": 1, "title": "4o"}]})
    client, _ = _client(transport)
    handler = RecordingHandler()
    with pytest.raises(NotFound):
        client.send_conversation("hi", handler, model="nope").wait(5)
    client.close(wait=True)
    assert handler.errors[0].code == "MODEL_NOT_FOUND"
    assert transport.post_count() == 0


def test_send_returns_before_stream_finishes():
    gate = threading.Event()
    transport = FakeTransport(streams=[[lambda: gate.wait(5), assistant_event("c1", "a1", "x"), "[DONE]"]])
    client, _ = _client(transport)
    handler = RecordingHandler()
    handle = client.send_conversation("hi", handler)
    assert not handle.done
    gate.set()
    handle.wait(5)
    client.close(wait=True)
    assert len(handler.completed) == 1


def test_rejected_credential_is_retried_once():
    transport = FakeTransport(streams=[[assistant_event("c1", "a1", "ok"), "[DONE]"]] * 2)
    transport.rejected_tokens = {"tok-1"}
    client, auth = _client(transport)
    handler = RecordingHandler()
    client.send_conversation("hi", handler).wait(5)
    client.close(wait=True)
    posts = [c for c in transport.calls if c[0] == "POST"]
    assert [c[2] for c in posts] == ["tok-1", "tok-2"]
    assert auth.calls == 2
    assert len(handler.completed) == 1 and handler.errors == []


def test_second_rejection_is_terminal():
    transport = FakeTransport(streams=[[assistant_event("c1", "a1", "ok"), "[DONE]"]] * 3)
    transport.rejected_tokens = {"tok-1", "tok-2"}
    client, auth = _client(transport)
    handler = RecordingHandler()
    handle = client.send_conversation("hi", handler)
    with pytest.raises(AuthenticationFailed):
        handle.wait(5)
    client.close(wait=True)
    assert transport.post_count() == 2
    assert auth.calls == 2
    assert handler.completed == []
    assert len(handler.errors) == 1
    assert handler.errors[0].code == "AUTH_REJECTED"


def test_transport_error_mid_stream_reports_once():
    transport = FakeTransport(
        streams=[[assistant_event("c1", "a1", "part"), TransportError(code="NETWORK_ERROR", message="reset")]]
    )
    client, _ = _client(transport)
    handler = RecordingHandler()
    handle = client.send_conversation("hi", handler)
    with pytest.raises(TransportError):
        handle.wait(5)
    client.close(wait=True)
    assert handler.completed == []
    assert [e.code for e in handler.errors] == ["NETWORK_ERROR"]
    assert client.repository.get("c1") is None


def test_cancel_suppresses_callbacks_and_closes_response():
    gate = threading.Event()
    first = threading.Event()
    transport = FakeTransport(
        streams=[[assistant_event("c1", "a1", "x"), lambda: gate.wait(5), assistant_event("c1", "a1", "y"), "[DONE]"]]
    )
    client, _ = _client(transport)
    done, errors = [], []
    handler = StreamCallbacks(on_complete=done.append, on_failure=errors.append, on_progress=lambda c: first.set())
    handle = client.send_conversation("hi", handler)
    assert first.wait(5)
    assert handle.cancel()
    gate.set()
    client.close(wait=True)
    assert handle.state is StreamState.CANCELLED
    assert done == [] and errors == []
    assert transport.responses[0].closed


def test_history_validation():
    client, auth = _client(FakeTransport())
    assert isinstance(client.get_conversation_history(0, 0).error, ValidationError)
    assert isinstance(client.get_conversation_history(-1, 10).error, ValidationError)
    assert auth.calls == 0
    client.close()


@pytest.mark.parametrize("offset,limit", [(0, 1), (0, 3), (2, 3), (4, 10), (5, 2)])
def test_history_page_never_exceeds_limit(offset, limit):
    client, _ = _client(FakeTransport(history=_history(5)))
    page = client.get_conversation_history(offset, limit).unwrap()
    client.close()
    assert len(page.items) <= limit
    assert page.offset + len(page.items) <= page.total


def test_history_served_from_cache_on_second_read():
    transport = FakeTransport(history=_history(4))
    client, _ = _client(transport)
    client.get_conversation_history(0, 2)
    client.get_conversation_history(0, 2)
    client.close()
    gets = [c for c in transport.calls if c[0] == "GET"]
    assert len(gets) == 1


def test_get_conversation_by_id():
    transport = FakeTransport(conversations={"c1": conversation_payload("c1", texts=("q", "a"))})
    client, _ = _client(transport)
    ok = client.get_conversation_by_id("c1")
    missing = client.get_conversation_by_id("nope")
    client.close()
    assert ok.ok and [m.text for m in ok.value.messages] == ["q", "a"]
    assert isinstance(missing.error, NotFound)
    assert client.repository.get("c1") is not None


def test_read_operations_retry_after_rejection():
    transport = FakeTransport(models={"models": [{"slug": "auto", "max_tokens": 8191, "title": "Auto"}]})
    transport.rejected_tokens = {"tok-1"}
    client, auth = _client(transport)
    result = client.get_models()
    client.close()
    assert result.ok
    assert result.value.slugs == ("auto",)
    assert auth.calls == 2


def test_get_models_is_cached():
    transport = FakeTransport(models={"models": [{"slug": "gpt-4o", "max_tokens": 1, "title": "4o"}]})
    client, _ = _client(transport)
    client.get_models()
    client.get_models()
    assert len(transport.calls) == 1
    client.get_models(refresh=True)
    client.close()
    assert len(transport.calls) == 2


def test_login_cancel_reaches_read_result():
    class Cancelling:
        def present_login(self):
            raise LoginCancelled(code="LOGIN_CANCELLED", message="closed")

    client, _ = _client(FakeTransport(), auth=Cancelling())
    result = client.get_models()
    client.close()
    assert isinstance(result.error, AuthenticationFailed)
    assert not client.is_authenticated


class BrokenStoreRepository(JsonConversationRepository):
    def __init__(self):
        super().__init__(persist=False)

    def upsert(self, conversation):
        raise BusinessError(code="STORE_WRITE_ERROR", message="disk full")


def _client_with_broken_store(transport):
    store = CredentialStore(SequenceAuthenticator("tok-1"), settings=StoreSettings())
    return ConversationClient(store, transport=transport, repository=BrokenStoreRepository(), settings=ClientSettings())


def test_get_by_id_succeeds_when_cache_write_fails(caplog):
    transport = FakeTransport(conversations={"c1": conversation_payload("c1", texts=("q", "a"))})
    client = _client_with_broken_store(transport)
    with caplog.at_level(logging.WARNING, logger="relay_core"):
        result = client.get_conversation_by_id("c1")
    client.close()
    assert result.ok
    assert any("Failed to cache conversation" in r.getMessage() for r in caplog.records)


def test_completed_stream_logs_cache_write_failure(caplog):
    transport = FakeTransport(streams=[[assistant_event("c1", "a1", "ok"), "[DONE]"]])
    client = _client_with_broken_store(transport)
    handler = RecordingHandler()
    with caplog.at_level(logging.INFO, logger="relay_core"):
        client.send_conversation("hi", handler).wait(5)
        client.close(wait=True)
    messages = [r.getMessage() for r in caplog.records]
    assert len(handler.completed) == 1 and handler.errors == []
    assert any("Failed to cache conversation" in m for m in messages)
    assert "Stream completed" in messages


@pytest.mark.parametrize(
    "transport",
    [
        FakeTransport(models={"models": [{"slug": "gpt-4o", "max_tokens": "lots", "title": "4o"}]}),
        FakeTransport(models={"models": [{"slug": "gpt-4o", "max_tokens": 1, "tags": [{"a": 1}]}]}),
    ],
)
def test_mistyped_models_become_failed_result(transport):
    client, _ = _client(transport)
    result = client.get_models()
    client.close()
    assert isinstance(result.error, MalformedResponse)


def test_mistyped_reads_become_failed_results():
    payload = conversation_payload("c1", texts=("q",))
    payload["messages"][0]["metadata"] = ["x"]
    transport = FakeTransport(conversations={"c1": payload})
    client, _ = _client(transport)
    detail = client.get_conversation_by_id("c1")
    client.close()
    assert isinstance(detail.error, MalformedResponse)


def test_history_with_bad_offset_becomes_failed_result():
    class BadOffsetTransport(FakeTransport):
        def get_json(self, path, token, params=None):
            data = super().get_json(path, token, params)
            return {**data, "offset": "x"}

    client, _ = _client(BadOffsetTransport(history=_history(3)))
    result = client.get_conversation_history(0, 2)
    client.close()
    assert isinstance(result.error, MalformedResponse)


def test_independent_conversations_stream_concurrently():
    barrier = threading.Barrier(2)
    transport = FakeTransport(
        streams=[
            [lambda: barrier.wait(5), assistant_event("c-a", "a1", "first"), "[DONE]"],
            [lambda: barrier.wait(5), assistant_event("c-b", "b1", "second"), "[DONE]"],
        ]
    )
    client, _ = _client(transport)
    first, second = RecordingHandler(), RecordingHandler()
    handles = [client.send_conversation("one", first), client.send_conversation("two", second)]
    for handle in handles:
        handle.wait(10)
    client.close(wait=True)
    assert len(first.completed) == 1 and first.errors == []
    assert len(second.completed) == 1 and second.errors == []
    assert {first.completed[0].id, second.completed[0].id} == {"c-a", "c-b"}
