import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from agent_gateway.api.app import create_app
from agent_gateway.api.service import ChatService
from agent_gateway.domain.exceptions import ApiError
from agent_gateway.domain.models import ChatResult, ChatUsage, ToolCall, ToolDefinition
from agent_gateway.infrastructure.storage.json_store import JsonSessionStore
from agent_gateway.tools.registry import ToolRegistry


class FakeProvider:
    name = "fake"

    def __init__(self, results=(), stream_tokens=("Hel", "lo"), hang_after_stream=False, stream_error=None):
        self._results = list(results) or [ChatResult(content="done", model="fake-model", usage=ChatUsage(2, 3))]
        self._stream_tokens = list(stream_tokens)
        self._hang = hang_after_stream
        self._stream_error = stream_error
        self.calls = []

    async def chat(self, messages, options):
        self.calls.append((list(messages), options))
        item = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def chat_stream(self, messages, options, sink):
        self.calls.append((list(messages), options))
        for token in self._stream_tokens:
            await sink.put(token)
        if self._stream_error is not None:
            raise self._stream_error
        if self._hang:
            await asyncio.sleep(3600)

    def supported_models(self):
        return ["fake-model"]


class EchoTool:
    @property
    def definition(self):
        return ToolDefinition(name="internet_search", description="echo", parameters={"type": "object"})

    async def call(self, arguments):
        return "search results"


class SettingsStub:
    history_limit = 50
    max_tool_loops = 5
    stream_queue_size = 100


def make_client(tmp_path, provider=None):
    store = JsonSessionStore(root=tmp_path / ".storage")
    provider = provider or FakeProvider()
    service = ChatService(store, provider, ToolRegistry([EchoTool()]), cfg=SettingsStub())
    return TestClient(create_app(service)), store, provider


def test_health(tmp_path):
    client, _, _ = make_client(tmp_path)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_session_crud(tmp_path):
    client, _, _ = make_client(tmp_path)
    created = client.post("/sessions", json={"name": "Trip", "metadata": {"k": 1}})
    assert created.status_code == 201
    sid = created.json()["id"]

    assert client.get(f"/sessions/{sid}").json()["name"] == "Trip"
    assert client.patch(f"/sessions/{sid}", json={"name": "Holiday"}).json()["name"] == "Holiday"
    assert [s["id"] for s in client.get("/sessions").json()] == [sid]
    assert client.get("/sessions/stats").json()["session_count"] == 1

    assert client.delete(f"/sessions/{sid}").status_code == 204
    missing = client.get(f"/sessions/{sid}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "SESSION_NOT_FOUND"
    assert client.delete(f"/sessions/{sid}").status_code == 404


def test_user_message_runs_agent_loop(tmp_path):
    provider = FakeProvider(
        results=[
            ChatResult(content="", model="fake-model", tool_calls=[ToolCall(id="c1", name="internet_search", arguments="{}")]),
            ChatResult(content="It is sunny.", model="fake-model", usage=ChatUsage(4, 6)),
        ]
    )
    client, store, _ = make_client(tmp_path, provider)
    sid = client.post("/sessions", json={"name": "s", "metadata": {"system_prompt": "Today is {current_date}."}}).json()["id"]

    resp = client.post(f"/sessions/{sid}/messages", json={"role": "user", "content": "weather?"})

    assert resp.status_code == 201
    body = resp.json()
    assert body["role"] == "assistant"
    assert body["content"] == "It is sunny."
    assert body["token_count"] == 10

    first_messages, first_options = provider.calls[0]
    assert [m.content for m in first_messages] == ["weather?"]
    assert first_options.system_prompt.startswith("Current Date: ")
    assert "{current_date}" not in first_options.system_prompt
    assert [t.name for t in first_options.tools] == ["internet_search"]

    roles = [m["role"] for m in client.get(f"/sessions/{sid}/messages").json()]
    assert roles == ["user", "assistant", "tool", "assistant"]


def test_non_user_message_is_only_stored(tmp_path):
    client, _, provider = make_client(tmp_path)
    sid = client.post("/sessions", json={"name": "s"}).json()["id"]

    resp = client.post(f"/sessions/{sid}/messages", json={"role": "system", "content": "be brief"})

    assert resp.status_code == 201
    assert resp.json()["role"] == "system"
    assert provider.calls == []


def test_invalid_role_rejected(tmp_path):
    client, _, _ = make_client(tmp_path)
    sid = client.post("/sessions", json={"name": "s"}).json()["id"]
    resp = client.post(f"/sessions/{sid}/messages", json={"role": "robot", "content": "x"})
    assert resp.status_code == 400


def test_message_to_missing_session(tmp_path):
    client, _, provider = make_client(tmp_path)
    resp = client.post("/sessions/nope/messages", json={"content": "hi"})
    assert resp.status_code == 404
    assert "error" in resp.json()
    assert provider.calls == []


def test_provider_failure_is_500(tmp_path):
    provider = FakeProvider(results=[ApiError(code="API_ERROR", message="upstream exploded", http_status=503)])
    client, _, _ = make_client(tmp_path, provider)
    sid = client.post("/sessions", json={"name": "s"}).json()["id"]

    resp = client.post(f"/sessions/{sid}/messages", json={"content": "hi"})

    assert resp.status_code == 500
    assert resp.json()["error"] == "upstream exploded"


def test_openai_completion_stateless(tmp_path):
    client, store, provider = make_client(tmp_path)
    resp = client.post(
        "/v1/chat/completions",
        json={"model": "fake-model", "messages": [{"role": "user", "content": "hi"}]},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["object"] == "chat.completion"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "done"}
    assert body["choices"][0]["finish_reason"] == "stop"
    assert body["usage"] == {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 5}
    sent, _ = provider.calls[0]
    assert sent[0].role == "system"
    assert sent[0].content.startswith("Current Date: ")
    assert store.stats().message_count == 0


def test_openai_stream_frames_and_session_header(tmp_path):
    client, store, _ = make_client(tmp_path)
    sid = client.post("/sessions", json={"name": "s"}).json()["id"]

    resp = client.post(
        "/v1/chat/completions",
        json={"model": "fake-model", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
        headers={"X-Session-Id": sid},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    frames = [f for f in resp.text.split("\n\n") if f]
    assert frames[-1] == "data: [DONE]"
    chunks = [json.loads(f[len("data: "):]) for f in frames[:-1]]
    assert chunks[0]["choices"][0]["delta"]["role"] == "assistant"
    assert [c["choices"][0]["delta"]["content"] for c in chunks[1:-1]] == ["Hel", "lo"]
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert all(c["object"] == "chat.completion.chunk" for c in chunks)

    records = store.list_messages(sid)
    assert [(r.role, r.content) for r in records] == [("user", "hi"), ("assistant", "Hello")]
    assert records[0].metadata == {"source": "openai_adapter"}


def test_export_then_import(tmp_path):
    client, store, _ = make_client(tmp_path)
    sid = client.post("/sessions", json={"name": "Trip"}).json()["id"]
    store.insert_message(sid, "user", "first line\nsecond line")
    store.insert_message(sid, "assistant", "reply")

    exported = client.get(f"/sessions/{sid}/export")
    assert exported.status_code == 200
    assert exported.text.startswith("Session: Trip\n")

    imported = client.post("/sessions/import", content=exported.text, headers={"Content-Type": "text/plain"})
    assert imported.status_code == 201
    new_id = imported.json()["id"]
    assert new_id != sid
    assert imported.json()["name"] == "Trip"
    contents = [(m["role"], m["content"]) for m in client.get(f"/sessions/{new_id}/messages").json()]
    assert contents == [("user", "first line\nsecond line"), ("assistant", "reply")]


def test_websocket_stream(tmp_path):
    client, store, _ = make_client(tmp_path)
    sid = client.post("/sessions", json={"name": "s"}).json()["id"]

    with client.websocket_connect(f"/ws/chat/{sid}") as ws:
        ws.send_json({"type": "message", "content": "hi"})
        events = [ws.receive_json() for _ in range(3)]

    assert events == [
        {"type": "chunk", "content": "Hel"},
        {"type": "chunk", "content": "lo"},
        {"type": "done", "content": ""},
    ]
    assert [r.content for r in store.list_messages(sid)] == ["hi", "Hello"]


def test_websocket_non_stream_reports_tool_status(tmp_path):
    provider = FakeProvider(
        results=[
            ChatResult(content="", model="fake-model", tool_calls=[ToolCall(id="c1", name="internet_search", arguments="{}")]),
            ChatResult(content="final", model="fake-model"),
        ]
    )
    client, _, _ = make_client(tmp_path, provider)
    sid = client.post("/sessions", json={"name": "s"}).json()["id"]

    with client.websocket_connect(f"/ws/chat/{sid}") as ws:
        ws.send_json({"type": "message", "content": "hi", "stream": False})
        events = [ws.receive_json() for _ in range(3)]

    assert events == [
        {"type": "status", "content": "Calling tool internet_search"},
        {"type": "chunk", "content": "final"},
        {"type": "done", "content": ""},
    ]


def test_websocket_cancel_mid_stream(tmp_path):
    provider = FakeProvider(stream_tokens=["c0", "c1", "c2"], hang_after_stream=True)
    client, _, _ = make_client(tmp_path, provider)
    sid = client.post("/sessions", json={"name": "s"}).json()["id"]

    with client.websocket_connect(f"/ws/chat/{sid}") as ws:
        ws.send_json({"type": "message", "content": "hi"})
        chunks = [ws.receive_json() for _ in range(3)]
        ws.send_json({"type": "cancel"})
        tail = [ws.receive_json() for _ in range(2)]

    assert [c["content"] for c in chunks] == ["c0", "c1", "c2"]
    assert tail == [
        {"type": "status", "content": "Generation cancelled"},
        {"type": "done", "content": ""},
    ]


def test_websocket_unknown_session(tmp_path):
    client, _, _ = make_client(tmp_path)
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/chat/missing") as ws:
            ws.receive_json()


def test_websocket_unexpected_failure_still_sends_error_and_done(tmp_path):
    provider = FakeProvider(stream_tokens=["a"], stream_error=RuntimeError("bad frame"))
    client, store, _ = make_client(tmp_path, provider)
    sid = client.post("/sessions", json={"name": "s"}).json()["id"]

    with client.websocket_connect(f"/ws/chat/{sid}") as ws:
        ws.send_json({"type": "message", "content": "hi"})
        events = [ws.receive_json() for _ in range(3)]

    assert events == [
        {"type": "chunk", "content": "a"},
        {"type": "error", "content": "bad frame"},
        {"type": "done", "content": ""},
    ]
    assert [r.content for r in store.list_messages(sid)] == ["hi", "a"]


def test_import_rejects_non_utf8_body(tmp_path):
    client, store, _ = make_client(tmp_path)
    resp = client.post("/sessions/import", content=b"Session: x\n\xff\xfe\n", headers={"Content-Type": "text/plain"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_IMPORT"
    assert store.stats().session_count == 0
