"""Tests for the hook/filter system."""

import asyncio

import pytest

from hybrid_storage.lib.hooks import AFTER_FILE_UPLOAD, HookRegistry, action, hooks


@pytest.fixture
def registry():
    """Create a fresh HookRegistry for each test."""
    return HookRegistry()


class TestHookRegistry:
    """Test the HookRegistry class."""

    def test_add_action_registers_handler(self, registry):
        """Test that add_action registers a handler."""
        registry.add_action("test_action", lambda: None)
        assert registry.has_action("test_action")
        assert not registry.has_filter("test_action")

    def test_action_priority_ordering(self, registry):
        """Test that actions are called in priority order."""
        call_order = []

        registry.add_action("test", lambda: call_order.append("high"), priority=20)
        registry.add_action("test", lambda: call_order.append("low"), priority=5)

        asyncio.run(registry.do_action("test"))

        assert call_order == ["low", "high"]

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self, registry):
        seen = []

        async def handler(value):
            seen.append(value)

        registry.add_action("test", handler)
        await registry.do_action("test", "input")

        assert seen == ["input"]

    @pytest.mark.asyncio
    async def test_filters_chain_with_extra_args(self, registry):
        """Test that filters receive the running value plus extra args."""
        registry.add_filter("test", lambda value, suffix: value + suffix, priority=20)
        registry.add_filter("test", lambda value, suffix: value.upper(), priority=10)

        result = await registry.apply_filters("test", "ab", "!")

        assert result == "AB!"

    @pytest.mark.asyncio
    async def test_filter_without_handlers_returns_value(self, registry):
        assert await registry.apply_filters("nothing", {"a": "1"}) == {"a": "1"}

    def test_remove_action(self, registry):
        def handler():
            pass

        registry.add_action("test", handler)

        assert registry.remove_action("test", handler) is True
        assert registry.remove_action("test", handler) is False
        assert not registry.has_action("test")

    def test_clear(self, registry):
        registry.add_action("a", lambda: None)
        registry.add_filter("f", lambda v: v)

        registry.clear()

        assert not registry.has_action("a")
        assert not registry.has_filter("f")


class TestActionDecorator:
    """Test the @action decorator on the global registry."""

    @pytest.mark.asyncio
    async def test_decorator_registers_on_global_hooks(self, clean_hooks):
        seen = []

        @action(AFTER_FILE_UPLOAD)
        def record(result):
            seen.append(result)

        await hooks.do_action(AFTER_FILE_UPLOAD, "result")

        assert seen == ["result"]
        assert record("direct") is None


class TestHandlerOrdering:
    """Test ordering and removal details."""

    @pytest.mark.asyncio
    async def test_equal_priorities_run_in_registration_order(self, registry):
        order = []
        for name in ("first", "second", "third"):
            registry.add_action("test", lambda name=name: order.append(name))

        await registry.do_action("test")

        assert order == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_failing_action_does_not_skip_later_handlers(self, registry, caplog):
        seen = []

        def broken(value):
            raise RuntimeError("metrics down")

        registry.add_action("test", broken, priority=5)
        registry.add_action("test", seen.append, priority=20)

        await registry.do_action("test", "event")

        assert seen == ["event"]
        assert "metrics down" in caplog.text

    @pytest.mark.asyncio
    async def test_failing_filter_propagates(self, registry):
        def broken(value):
            raise RuntimeError("filter down")

        registry.add_filter("test", broken)

        with pytest.raises(RuntimeError, match="filter down"):
            await registry.apply_filters("test", "value")

    @pytest.mark.asyncio
    async def test_remove_filter(self, registry):
        def shout(value):
            return value.upper()

        registry.add_filter("test", shout)
        assert registry.remove_filter("test", shout) is True

        assert await registry.apply_filters("test", "quiet") == "quiet"
