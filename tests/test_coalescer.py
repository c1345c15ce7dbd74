"""Tests for the Subscription Coalescer."""

import asyncio

import pytest

from sync_kernel.subscriptions.coalescer import SubscriptionCoalescer, SubscriptionHandle

SETTLE = 0.01


class FakeChannel:
    """Records which factories opened and closed a subscription."""

    def __init__(self):
        self.opened = []
        self.closed = []

    def factory(self, name: str):
        def open_subscription(handle: SubscriptionHandle):
            self.opened.append(name)
            return lambda: self.closed.append(name)
        return open_subscription


class TestSubscriptionHandle:
    def test_cancel_is_idempotent(self):
        calls = []
        handle = SubscriptionHandle("k", cancel=lambda: calls.append(1))

        handle.cancel()
        handle.cancel()
        handle()

        assert calls == [1]
        assert handle.active is False

    def test_bind_after_cancel_runs_cancel_immediately(self):
        calls = []
        handle = SubscriptionHandle("k")
        handle.cancel()
        handle.bind(lambda: calls.append("closed"))

        assert calls == ["closed"]


class TestSubscriptionCoalescer:
    def setup_method(self):
        self.coalescer = SubscriptionCoalescer()
        self.channel = FakeChannel()

    def test_second_ensure_supersedes_first_before_it_settles(self):
        async def scenario():
            self.coalescer.ensure("messages:c1", self.channel.factory("f1"), SETTLE)
            self.coalescer.ensure("messages:c1", self.channel.factory("f2"), SETTLE)
            await asyncio.sleep(SETTLE * 5)

        asyncio.run(scenario())

        assert self.channel.opened == ["f2"]
        assert self.coalescer.is_live("messages:c1")
        assert self.coalescer.keys == {"messages:c1"}

    def test_ensure_tears_down_live_subscription(self):
        async def scenario():
            self.coalescer.ensure("k", self.channel.factory("f1"), SETTLE)
            await asyncio.sleep(SETTLE * 5)
            first = self.coalescer.handle_for("k")
            self.coalescer.ensure("k", self.channel.factory("f2"), SETTLE)
            # Torn down before the replacement is even scheduled to run
            assert self.channel.closed == ["f1"]
            assert not self.coalescer.is_current("k", first)
            await asyncio.sleep(SETTLE * 5)

        asyncio.run(scenario())

        assert self.channel.opened == ["f1", "f2"]

    def test_is_current_only_for_registered_handle(self):
        seen = {}

        async def scenario():
            def factory(handle):
                seen["handle"] = handle
                return lambda: None

            self.coalescer.ensure("k", factory, SETTLE)
            await asyncio.sleep(SETTLE * 5)
            seen["current"] = self.coalescer.is_current("k", seen["handle"])
            self.coalescer.cancel("k")
            seen["after_cancel"] = self.coalescer.is_current("k", seen["handle"])

        asyncio.run(scenario())

        assert seen["current"] is True
        assert seen["after_cancel"] is False

    def test_cancel_pending_never_invokes_factory(self):
        async def scenario():
            self.coalescer.ensure("k", self.channel.factory("f1"), SETTLE)
            assert self.coalescer.is_pending("k")
            self.coalescer.cancel("k")
            await asyncio.sleep(SETTLE * 5)

        asyncio.run(scenario())

        assert self.channel.opened == []
        assert self.coalescer.keys == set()

    def test_keys_are_independent(self):
        async def scenario():
            self.coalescer.ensure("a", self.channel.factory("fa"), SETTLE)
            self.coalescer.ensure("b", self.channel.factory("fb"), SETTLE)
            await asyncio.sleep(SETTLE * 5)
            self.coalescer.cancel_all()

        asyncio.run(scenario())

        assert sorted(self.channel.opened) == ["fa", "fb"]
        assert sorted(self.channel.closed) == ["fa", "fb"]

    def test_factory_error_goes_to_on_error(self):
        errors = []

        def broken(handle):
            raise RuntimeError("channel refused")

        async def scenario():
            self.coalescer.ensure("k", broken, SETTLE, on_error=lambda key, exc: errors.append((key, exc)))
            await asyncio.sleep(SETTLE * 5)

        asyncio.run(scenario())

        assert len(errors) == 1
        assert errors[0][0] == "k"
        assert isinstance(errors[0][1], RuntimeError)
        assert not self.coalescer.is_live("k")

    def test_ensure_requires_running_loop(self):
        with pytest.raises(RuntimeError):
            self.coalescer.ensure("k", self.channel.factory("f1"), SETTLE)
