"""End-to-end tests: MessagingLink and MessagingExecutor over connected ports.

Verifies:
- Results, errors and completion travel intact
- The executor sees the requesting port in the operation context
- Concurrent operations on one port stay isolated
- Cancellation and disconnects cancel the engine exactly once
- Listener counts return to their baseline
- A link can serve as the engine of another executor (relay)
"""

import asyncio

import pytest

from messaging_link import (
    MessagingExecutor,
    MessagingLink,
    Operation,
    OperationError,
    PortDisconnectedError,
    SequentialIdGenerator,
    create_executor_listener,
    create_messaging_link,
    create_port_pair,
)
from messaging_link.protocol import is_operation_unsubscribe

BASIC_QUERY = Operation(
    query="query BasicQuery { foo }",
    operation_name="BasicQuery",
    variables={"arg1": 1},
)


def listener_counts(*ports) -> list[tuple[int, int, int]]:
    return [
        (p.on_message.listener_count, p.on_disconnect.listener_count, p.on_close.listener_count)
        for p in ports
    ]


class CountingEngine:
    """Engine yielding scripted results, optionally blocking afterwards."""

    def __init__(self, results=(), *, block: bool = False, error: Exception | None = None):
        self.results = list(results)
        self.block = block
        self.error = error
        self.operations: list[Operation] = []
        self.started = asyncio.Event()
        self.cancellations = 0

    async def __call__(self, operation):
        self.operations.append(operation)
        self.started.set()
        try:
            for result in self.results:
                yield result
                await asyncio.sleep(0)
            if self.error is not None:
                raise self.error
            if self.block:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancellations += 1
            raise


@pytest.fixture
def connected(port_pair):
    """Factory wiring a link and an executor over the shared port pair."""
    requester, executor_port = port_pair

    def _connect(engine):
        executor = MessagingExecutor(engine)
        executor.bind(executor_port)
        link = MessagingLink(requester, id_generator=SequentialIdGenerator())
        return link, executor

    return _connect


# =============================================================================
# Tests: Round trip
# =============================================================================


class TestRoundTrip:
    """Tests for operations travelling over a link."""

    @pytest.mark.anyio
    async def test_single_result(self, connected):
        """A single result should arrive and the stream should complete."""
        link, _ = connected(CountingEngine([{"data": {"foo": "bar"}}]))

        assert await link.execute(BASIC_QUERY) == [{"data": {"foo": "bar"}}]

    @pytest.mark.anyio
    async def test_operation_fields_preserved(self, connected):
        """Query, name and variables should reach the engine unchanged."""
        engine = CountingEngine([None])
        link, _ = connected(engine)

        await link.execute(
            Operation(
                query=BASIC_QUERY.query,
                operation_name="BasicQuery",
                variables={"arg1": 1, "nested": {"list": [1, "two", None]}},
            )
        )

        (received,) = engine.operations
        assert received.query == "query BasicQuery { foo }"
        assert received.operation_name == "BasicQuery"
        assert received.variables == {"arg1": 1, "nested": {"list": [1, "two", None]}}

    @pytest.mark.anyio
    async def test_port_in_context(self, connected, port_pair):
        """The engine should see its own end of the port, not the caller's value."""
        _, executor_port = port_pair
        engine = CountingEngine([None])
        link, _ = connected(engine)

        await link.execute(
            Operation(query="{ foo }", context={"port": "ignored", "tenant": "acme"})
        )

        (received,) = engine.operations
        assert received.context["port"] is executor_port
        assert received.context["tenant"] == "acme"

    @pytest.mark.anyio
    async def test_streaming_results_in_order(self, connected):
        """Multiple results should be yielded in order before completion."""
        link, _ = connected(CountingEngine([{"data": {"foo": "bar"}}, {"data": {"foo": "foo"}}]))

        received = []
        async with link.request(BASIC_QUERY) as stream:
            async for result in stream:
                received.append(result)

        assert received == [{"data": {"foo": "bar"}}, {"data": {"foo": "foo"}}]

    @pytest.mark.anyio
    async def test_error(self, connected):
        """An engine failure should raise OperationError with its message."""
        link, _ = connected(CountingEngine(error=ValueError("An error")))

        with pytest.raises(OperationError) as exc_info:
            await link.execute(BASIC_QUERY)

        assert str(exc_info.value) == "An error"

    @pytest.mark.anyio
    async def test_results_before_error(self, connected):
        """Results produced before a failure should still be delivered."""
        link, _ = connected(CountingEngine([1, 2], error=RuntimeError("late failure")))

        received = []
        with pytest.raises(OperationError, match="late failure"):
            async for result in link.request(BASIC_QUERY):
                received.append(result)

        assert received == [1, 2]

    @pytest.mark.anyio
    async def test_factories(self, port_pair):
        """create_messaging_link and create_executor_listener should wire up."""
        requester, executor_port = port_pair
        listen = create_executor_listener(CountingEngine(["ok"]))
        listen(executor_port)

        link = create_messaging_link(requester)

        assert await link.execute(BASIC_QUERY) == ["ok"]


# =============================================================================
# Tests: Concurrency
# =============================================================================


class TestConcurrency:
    """Tests for multiplexing several operations over one port."""

    @pytest.mark.anyio
    async def test_concurrent_operations_isolated(self, connected):
        """Concurrent operations should each get exactly their own results."""

        async def engine(operation):
            n = operation.variables["n"]
            for i in range(n):
                await asyncio.sleep(0)
                yield f"{operation.operation_name}-{i}"

        link, _ = connected(engine)

        results = await asyncio.gather(
            *(
                link.execute(Operation(query="{ x }", operation_name=f"Op{n}", variables={"n": n}))
                for n in range(1, 6)
            )
        )

        for n, received in zip(range(1, 6), results):
            assert received == [f"Op{n}-{i}" for i in range(n)]

    @pytest.mark.anyio
    async def test_one_failure_does_not_affect_others(self, connected):
        """An error in one operation should not disturb the others."""

        async def engine(operation):
            await asyncio.sleep(0)
            if operation.operation_name == "Bad":
                raise RuntimeError("bad operation")
            yield operation.operation_name

        link, _ = connected(engine)

        good, bad = await asyncio.gather(
            link.execute(Operation(query="{ g }", operation_name="Good")),
            link.execute(Operation(query="{ b }", operation_name="Bad")),
            return_exceptions=True,
        )

        assert good == ["Good"]
        assert isinstance(bad, OperationError)
        assert str(bad) == "bad operation"

    @pytest.mark.anyio
    async def test_cancel_one_of_many(self, connected, wait_until):
        """Cancelling one operation should leave the others running."""
        release = asyncio.Event()

        async def engine(operation):
            await release.wait()
            yield operation.operation_name

        link, executor = connected(engine)

        keep = link.request(Operation(query="{ k }", operation_name="Keep"))
        drop = link.request(Operation(query="{ d }", operation_name="Drop"))
        keep.start()
        drop.start()
        await wait_until(lambda: executor.active_operations == 2)

        await drop.aclose()
        await wait_until(lambda: executor.active_operations == 1)
        release.set()

        assert [result async for result in keep] == ["Keep"]


# =============================================================================
# Tests: Cancellation and disconnect
# =============================================================================


class TestCancellation:
    """Tests for cancellation crossing the link."""

    @pytest.mark.anyio
    async def test_double_cancel(self, connected, port_pair):
        """Closing twice should send one unsubscribe and cancel the engine once."""
        _, executor_port = port_pair
        engine = CountingEngine(block=True)
        link, executor = connected(engine)

        unsubscribes = []

        def spy(value):
            if is_operation_unsubscribe(value, "op_1"):
                unsubscribes.append(value)

        executor_port.on_message.add_listener(spy)

        stream = link.request(BASIC_QUERY)
        stream.start()
        await engine.started.wait()
        operation = executor.bindings[0].operations["op_1"]

        await stream.aclose()
        await stream.aclose()
        await operation.wait()

        assert len(unsubscribes) == 1
        assert engine.cancellations == 1
        assert executor.active_operations == 0

    @pytest.mark.anyio
    async def test_cancel_after_partial_results(self, connected):
        """Breaking out after the first result should cancel the rest."""
        engine = CountingEngine(["first", "second"], block=True)
        link, executor = connected(engine)

        async with link.request(BASIC_QUERY) as stream:
            async for result in stream:
                assert result == "first"
                break
            operation = executor.bindings[0].operations["op_1"]

        await operation.wait()

        assert engine.cancellations == 1

    @pytest.mark.anyio
    async def test_requester_disconnect_cancels_engine(self, connected, port_pair):
        """A requester disconnect should cancel the engine exactly once."""
        requester, _ = port_pair
        engine = CountingEngine(block=True)
        link, executor = connected(engine)

        stream = link.request(BASIC_QUERY)
        stream.start()
        await engine.started.wait()
        operation = executor.bindings[0].operations["op_1"]

        requester.disconnect()
        await operation.wait()

        assert engine.cancellations == 1
        assert executor.bindings == []

    @pytest.mark.anyio
    async def test_executor_disconnect_fails_stream(self, connected, port_pair):
        """Closing the executor's port should unbind it and fail the stream."""
        _, executor_port = port_pair
        engine = CountingEngine(block=True)
        link, executor = connected(engine)

        stream = link.request(BASIC_QUERY)
        stream.start()
        await engine.started.wait()
        binding = executor.bindings[0]
        operation = binding.operations["op_1"]

        executor_port.disconnect()

        assert not binding.is_bound
        with pytest.raises(PortDisconnectedError):
            await stream.__anext__()
        await operation.wait()
        assert engine.cancellations == 1

    @pytest.mark.anyio
    async def test_requester_close_fails_own_stream(self, connected, port_pair):
        """Closing the requester's port should fail its stream and cancel the engine."""
        requester, _ = port_pair
        engine = CountingEngine(block=True)
        link, executor = connected(engine)

        stream = link.request(BASIC_QUERY)
        stream.start()
        await engine.started.wait()
        operation = executor.bindings[0].operations["op_1"]

        requester.disconnect()

        with pytest.raises(PortDisconnectedError):
            await asyncio.wait_for(stream.__anext__(), timeout=1)
        await operation.wait()
        assert engine.cancellations == 1
        assert link.in_flight(requester) == 0

    @pytest.mark.anyio
    async def test_break_without_context_manager(self, connected, port_pair, wait_until):
        """Breaking out of a bare `async for` should cancel the engine once."""
        requester, _ = port_pair
        engine = CountingEngine(["first", "second"], block=True)
        link, executor = connected(engine)

        async for result in link.request(BASIC_QUERY):
            assert result == "first"
            break

        await wait_until(lambda: executor.active_operations == 0)

        assert engine.cancellations == 1
        assert link.in_flight(requester) == 0


# =============================================================================
# Tests: Listener bookkeeping
# =============================================================================


class TestListenerBaseline:
    """Listener counts on both ports should return to their baseline."""

    @pytest.mark.anyio
    async def test_baseline_after_traffic(self, connected, port_pair, wait_until):
        """Complete, error and cancel should leave only the executor's listeners."""
        requester, executor_port = port_pair

        async def engine(operation):
            if operation.operation_name == "Fail":
                raise RuntimeError("x")
            if operation.operation_name == "Block":
                await asyncio.Event().wait()
            yield 1

        before = listener_counts(requester, executor_port)
        link, executor = connected(engine)
        bound = listener_counts(requester, executor_port)

        await link.execute(Operation(query="{ a }", operation_name="Ok"))
        with pytest.raises(OperationError):
            await link.execute(Operation(query="{ b }", operation_name="Fail"))
        stream = link.request(Operation(query="{ c }", operation_name="Block"))
        stream.start()
        await wait_until(lambda: executor.active_operations == 1)
        await stream.aclose()
        await wait_until(lambda: executor.active_operations == 0)

        assert listener_counts(requester, executor_port) == bound
        assert bound[0] == before[0]

        executor.close()
        assert listener_counts(requester, executor_port) == before


# =============================================================================
# Tests: Foreign traffic and relays
# =============================================================================


class TestSharedPorts:
    """Tests for ports carrying other traffic, and for relays."""

    @pytest.mark.anyio
    async def test_foreign_traffic_ignored(self, connected, port_pair):
        """Other messages on the same port should be ignored by both sides."""
        requester, executor_port = port_pair
        link, _ = connected(CountingEngine(["result"]))
        seen_by_requester = []
        requester.on_message.add_listener(seen_by_requester.append)

        stream = link.request(BASIC_QUERY)
        stream.start()
        requester.post_message({"type": "keepalive"})
        executor_port.post_message({"type": "keepalive"})
        executor_port.post_message("plain string")

        assert [result async for result in stream] == ["result"]
        assert {"type": "keepalive"} in seen_by_requester

    @pytest.mark.anyio
    async def test_link_as_engine(self):
        """An executor whose engine is a link should relay operations."""
        client_port, relay_port = create_port_pair()
        upstream_port, backend_port = create_port_pair()

        backend = CountingEngine(["from backend"])
        MessagingExecutor(backend).bind(backend_port)
        relay = MessagingExecutor(MessagingLink(upstream_port))
        relay.bind(relay_port)

        results = await MessagingLink(client_port).execute(BASIC_QUERY)

        assert results == ["from backend"]
        assert backend.operations[0].context["port"] is backend_port

    @pytest.mark.anyio
    async def test_relay_propagates_cancellation(self, wait_until):
        """Cancelling at the client should cancel the backend engine."""
        client_port, relay_port = create_port_pair()
        upstream_port, backend_port = create_port_pair()

        backend = CountingEngine(block=True)
        MessagingExecutor(backend).bind(backend_port)
        relay = MessagingExecutor(MessagingLink(upstream_port))
        relay.bind(relay_port)

        stream = MessagingLink(client_port).request(BASIC_QUERY)
        stream.start()
        await backend.started.wait()

        await stream.aclose()
        await wait_until(lambda: backend.cancellations == 1)

        assert relay.active_operations == 0
