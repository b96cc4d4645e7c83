import asyncio

import httpx
import pytest

from agent_gateway.domain.exceptions import ApiError, InvalidResponseError, NetworkError, RateLimitError, ValidationError
from agent_gateway.domain.models import ChatMessage, ChatOptions, ToolDefinition
from agent_gateway.providers.openai_client import OpenAIClient
from agent_gateway.streaming.relay import TokenSink


class SettingsStub:
    openai_api_key = "sk-test-0123456789"
    openai_base_url = "https://api.test/v1"
    openai_model = "gpt-test"
    http_timeout = 1.0


class FakeResponse:
    def __init__(self, status_code=200, data=None, lines=(), text=""):
        self.status_code = status_code
        self._data = data
        self._lines = list(lines)
        self.text = text

    def json(self):
        return self._data

    async def aread(self):
        return self.text.encode()

    async def aiter_lines(self):
        for line in self._lines:
            yield line


class StreamContext:
    def __init__(self, response):
        self._response = response

    async def __aenter__(self):
        return self._response

    async def __aexit__(self, *args):
        return False


def install_client(monkeypatch, response, calls):
    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None):
            calls.append({"url": url, "json": json, "headers": headers})
            return response

        def stream(self, method, url, json=None, headers=None):
            calls.append({"url": url, "json": json, "headers": headers})
            return StreamContext(response)

    monkeypatch.setattr("httpx.AsyncClient", Client)


def test_chat_parses_tool_calls_and_usage(monkeypatch):
    calls = []
    raw_args = '{"query": "weather in Paris"}'
    data = {
        "model": "gpt-test",
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"id": "call_1", "type": "function", "function": {"name": "internet_search", "arguments": raw_args}}
                    ],
                }
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }
    install_client(monkeypatch, FakeResponse(data=data), calls)
    tool = ToolDefinition(name="internet_search", description="search", parameters={"type": "object"})

    client = OpenAIClient(SettingsStub())
    result = asyncio.run(
        client.chat([ChatMessage(role="user", content="weather?")], ChatOptions(tools=[tool], tool_choice="auto"))
    )

    assert not result.finished
    assert result.tool_calls[0].id == "call_1"
    assert result.tool_calls[0].arguments == raw_args
    assert result.usage.total_tokens == 15
    sent = calls[0]
    assert sent["url"] == "https://api.test/v1/chat/completions"
    assert sent["headers"]["Authorization"] == "Bearer sk-test-0123456789"
    assert sent["json"]["tools"][0]["function"]["name"] == "internet_search"
    assert sent["json"]["tool_choice"] == "auto"


def test_system_prompt_inserted_only_without_system_message(monkeypatch):
    calls = []
    data = {"choices": [{"message": {"role": "assistant", "content": "ok"}}]}
    install_client(monkeypatch, FakeResponse(data=data), calls)
    client = OpenAIClient(SettingsStub())
    opts = ChatOptions(system_prompt="be brief")

    asyncio.run(client.chat([ChatMessage(role="user", content="hi")], opts))
    assert calls[0]["json"]["messages"][0] == {"role": "system", "content": "be brief"}

    asyncio.run(
        client.chat(
            [ChatMessage(role="system", content="existing"), ChatMessage(role="user", content="hi")],
            opts,
        )
    )
    msgs = calls[1]["json"]["messages"]
    assert [m["content"] for m in msgs if m["role"] == "system"] == ["existing"]


def test_missing_choices_is_invalid_response(monkeypatch):
    install_client(monkeypatch, FakeResponse(data={"choices": []}), [])
    client = OpenAIClient(SettingsStub())
    with pytest.raises(InvalidResponseError):
        asyncio.run(client.chat([ChatMessage(role="user", content="hi")], ChatOptions()))


def test_rate_limit(monkeypatch):
    install_client(monkeypatch, FakeResponse(status_code=429, text="too many"), [])
    client = OpenAIClient(SettingsStub())
    with pytest.raises(RateLimitError):
        asyncio.run(client.chat([ChatMessage(role="user", content="hi")], ChatOptions()))


def test_network_error(monkeypatch):
    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None):
            raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("httpx.AsyncClient", Client)
    client = OpenAIClient(SettingsStub())
    with pytest.raises(NetworkError):
        asyncio.run(client.chat([ChatMessage(role="user", content="hi")], ChatOptions()))


def test_missing_api_key():
    class NoKey(SettingsStub):
        openai_api_key = None

    client = OpenAIClient(NoKey())
    with pytest.raises(ValidationError):
        asyncio.run(client.chat([ChatMessage(role="user", content="hi")], ChatOptions()))


def test_stream_forwards_content_deltas_only(monkeypatch):
    lines = [
        'data: {"choices": [{"index": 0, "delta": {"role": "assistant"}}]}',
        "",
        'data: {"choices": [{"index": 0, "delta": {"content": "Hel"}}]}',
        'data: {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]}',
        'data: {"choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 2}}',
        "data: [DONE]",
    ]
    install_client(monkeypatch, FakeResponse(lines=lines), [])
    client = OpenAIClient(SettingsStub())

    async def run():
        sink = TokenSink()
        await client.chat_stream([ChatMessage(role="user", content="hi")], ChatOptions(), sink)
        sink.close()
        return [token async for token in sink]

    assert asyncio.run(run()) == ["Hel", "lo"]


def test_stream_error_status(monkeypatch):
    install_client(monkeypatch, FakeResponse(status_code=500, text="upstream down"), [])
    client = OpenAIClient(SettingsStub())

    async def run():
        await client.chat_stream([ChatMessage(role="user", content="hi")], ChatOptions(), TokenSink())

    with pytest.raises(ApiError) as exc_info:
        asyncio.run(run())
    assert "upstream down" in str(exc_info.value)


@pytest.mark.parametrize(
    "data",
    [
        [],
        "oops",
        {"choices": ["not-an-object"]},
        {"choices": [{"message": "text"}]},
        {"choices": [{"message": {"content": "hi", "tool_calls": ["bad"]}}]},
    ],
)
def test_wrong_shape_is_invalid_response(monkeypatch, data):
    install_client(monkeypatch, FakeResponse(data=data), [])
    client = OpenAIClient(SettingsStub())
    with pytest.raises(InvalidResponseError):
        asyncio.run(client.chat([ChatMessage(role="user", content="hi")], ChatOptions()))


@pytest.mark.parametrize("line", ["data: [1]", 'data: "text"', 'data: {"choices": ["x"]}', 'data: {"choices": [{"delta": "x"}]}'])
def test_stream_ignores_wrong_shape_lines(line):
    assert OpenAIClient._parse_stream_line(line) is None
