"""Tests for the EventBus."""

import asyncio

import pytest

from plugin_runtime.plugins.hooks import EventBus


def run(coro):
    return asyncio.run(coro)


class TestEmitOrdering:
    """Priority bands and value chaining."""

    def test_sequential_chain_by_priority(self, bus):
        """Priorities 10 (A), 10 (B), 20 (C): A then B then C, each gets the previous value."""
        seen = []

        def handler(name, suffix):
            def _handle(ctx):
                seen.append((name, ctx.data))
                return ctx.data + suffix

            return _handle

        bus.register("h", handler("C", "c"), priority=20)
        bus.register("h", handler("A", "a"), priority=10)
        bus.register("h", handler("B", "b"), priority=10)

        result = run(bus.filter("h", ""))

        assert result == "abc"
        assert seen == [("A", ""), ("B", "a"), ("C", "ab")]

    def test_none_keeps_current_value(self, bus):
        """A handler returning None does not replace the data."""
        bus.register("h", lambda ctx: None, priority=1)
        bus.register("h", lambda ctx: ctx.data * 2, priority=2)
        assert run(bus.filter("h", 3)) == 6

    def test_async_handlers(self, bus):
        async def double(ctx):
            await asyncio.sleep(0)
            return ctx.data * 2

        bus.register("h", double)
        assert run(bus.filter("h", 4)) == 8

    def test_no_handlers_returns_input(self, bus):
        result = run(bus.emit("nothing", {"x": 1}))
        assert result.data == {"x": 1}
        assert not result.cancelled

    def test_parallel_band_keeps_last_settled_value(self, bus):
        """The slower handler settles last, so its value wins."""

        async def slow(ctx):
            await asyncio.sleep(0.02)
            return "slow"

        async def fast(ctx):
            return "fast"

        bus.register("h", slow)
        bus.register("h", fast)
        assert run(bus.emit("h", "start")).data == "slow"

    def test_parallel_band_sees_same_input(self, bus):
        """Handlers in one parallel band all receive the band's input."""
        seen = []

        def record(ctx):
            seen.append(ctx.data)
            return "changed"

        bus.register("h", record)
        bus.register("h", record)
        run(bus.emit("h", "input"))
        assert seen == ["input", "input"]

    def test_failing_handler_is_isolated(self, bus):
        """A raising handler is logged and the chain continues."""

        def boom(ctx):
            raise RuntimeError("boom")

        bus.register("h", boom, priority=1)
        bus.register("h", lambda ctx: "after", priority=2)
        assert run(bus.filter("h", "before")) == "after"


class TestCancel:
    """Cancelable emissions."""

    def test_cancel_stops_later_bands(self, bus):
        """Cancelling in band 10 skips band 20 but finishes band 10."""
        calls = []

        def canceller(ctx):
            calls.append("cancel")
            ctx.cancel()

        bus.register("h", canceller, priority=10)
        bus.register("h", lambda ctx: calls.append("same-band"), priority=10)
        bus.register("h", lambda ctx: calls.append("later"), priority=20)

        result = run(bus.emit("h", None, cancelable=True))

        assert result.cancelled
        assert sorted(calls) == ["cancel", "same-band"]

    def test_cancel_absent_when_not_cancelable(self, bus):
        seen = []
        bus.register("h", lambda ctx: seen.append(ctx.cancel))
        run(bus.emit("h"))
        assert seen == [None]


class TestOnce:
    """Handlers registered with once=True."""

    def test_once_runs_a_single_time(self, bus):
        calls = []
        bus.register("h", lambda ctx: calls.append(1), once=True)
        run(bus.emit("h"))
        run(bus.emit("h"))
        assert calls == [1]
        assert not bus.has_handlers("h")

    def test_once_removed_even_when_it_raises(self, bus):
        """A failing once-handler is still removed."""

        def boom(ctx):
            raise ValueError("nope")

        bus.register("h", boom, once=True, owner="p")
        run(bus.emit("h"))
        assert bus.handler_count("h") == 0
        assert bus.owner_tokens("p") == set()

    def test_once_in_skipped_band_survives(self, bus):
        """Handlers in bands skipped by cancel did not fire and stay registered."""
        bus.register("h", lambda ctx: ctx.cancel(), priority=1)
        bus.register("h", lambda ctx: None, priority=2, once=True)
        run(bus.emit("h", cancelable=True))
        assert bus.handler_count("h") == 2


class TestRegistration:
    """Registration bookkeeping."""

    def test_unregister_function(self, bus):
        off = bus.register("h", lambda ctx: "x")
        off()
        assert not bus.has_handlers("h")
        assert "h" not in bus.registered_hooks()

    def test_unregister_by_handler(self, bus):
        def handler(ctx):
            return None

        bus.register("h", handler)
        bus.register("h", handler)
        bus.unregister("h", handler)
        assert bus.handler_count("h") == 1

    def test_unregister_owner(self, bus):
        """Owner removal drops every hook that owner registered, nothing else."""
        bus.register("a", lambda ctx: None, owner="p1")
        bus.register("b", lambda ctx: None, owner="p1")
        bus.register("a", lambda ctx: None, owner="p2")

        assert sorted(bus.owner_hooks("p1")) == ["a", "b"]
        assert bus.unregister_owner("p1") == 2
        assert bus.owner_hooks("p1") == []
        assert bus.handler_count("a") == 1
        assert not bus.has_handlers("b")

    def test_unregister_tokens(self, bus):
        bus.register("a", lambda ctx: None, owner="p")
        before = bus.owner_tokens("p")
        bus.register("b", lambda ctx: None, owner="p")
        added = bus.owner_tokens("p") - before

        bus.unregister_tokens(added)
        assert bus.owner_tokens("p") == before
        assert bus.registered_hooks() == ["a"]

    def test_register_requires_callable(self, bus):
        with pytest.raises(TypeError):
            bus.register("h", "not callable")

    def test_action_ignores_results(self):
        bus = EventBus()
        bus.register("h", lambda ctx: "ignored")
        assert run(bus.action("h", 1)) is None
