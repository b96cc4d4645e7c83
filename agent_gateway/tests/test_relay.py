import asyncio

import pytest

from agent_gateway.domain.exceptions import NetworkError
from agent_gateway.domain.models import ChatOptions
from agent_gateway.streaming.relay import StreamRelay, TokenSink


class ScriptedProvider:
    name = "scripted"

    def __init__(self, tokens, error=None):
        self._tokens = list(tokens)
        self._error = error
        self.max_pending = 0

    async def chat_stream(self, messages, options, sink):
        for token in self._tokens:
            await sink.put(token)
            self.max_pending = max(self.max_pending, sink._queue.qsize())
        if self._error is not None:
            raise self._error


class HangingProvider:
    name = "hanging"

    def __init__(self):
        self.cancelled = False

    async def chat_stream(self, messages, options, sink):
        await sink.put("first")
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def test_tokens_delivered_in_order_with_backpressure():
    tokens = [f"t{i}" for i in range(50)]
    provider = ScriptedProvider(tokens)

    async def run():
        relay = StreamRelay(provider, [], ChatOptions(), maxsize=2).start()
        received = []
        async for token in relay:
            received.append(token)
            await asyncio.sleep(0)
        return relay, received

    relay, received = asyncio.run(run())
    assert received == tokens
    assert relay.text == "".join(tokens)
    assert relay.error is None
    assert provider.max_pending <= 2


def test_immediate_failure_ends_iteration_normally():
    provider = ScriptedProvider([], error=NetworkError(code="NETWORK_ERROR", message="down"))

    async def run():
        relay = StreamRelay(provider, [], ChatOptions()).start()
        received = [token async for token in relay]
        return relay, received

    relay, received = asyncio.run(run())
    assert received == []
    assert isinstance(relay.error, NetworkError)


def test_partial_output_then_failure():
    provider = ScriptedProvider(["a", "b"], error=NetworkError(code="NETWORK_ERROR", message="reset"))

    async def run():
        relay = StreamRelay(provider, [], ChatOptions()).start()
        return relay, [token async for token in relay]

    relay, received = asyncio.run(run())
    assert received == ["a", "b"]
    assert relay.text == "ab"
    assert relay.error is not None


def test_cancel_tears_down_producer():
    provider = HangingProvider()

    async def run():
        relay = StreamRelay(provider, [], ChatOptions()).start()
        received = []
        async for token in relay:
            received.append(token)
            relay.cancel()
        await asyncio.sleep(0)
        return received

    assert asyncio.run(run()) == ["first"]
    assert provider.cancelled


def test_sink_rejects_put_after_close():
    async def run():
        sink = TokenSink(maxsize=1)
        await sink.put("x")
        sink.close()
        with pytest.raises(RuntimeError):
            await sink.put("y")
        return [token async for token in sink]

    assert asyncio.run(run()) == ["x"]
