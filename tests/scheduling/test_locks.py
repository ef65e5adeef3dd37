"""Tests for per-resource locks."""

import threading

import pytest

from carebase.scheduling.locks import ResourceLockRegistry, authorization_key, caregiver_key, client_key


class TestResourceLockRegistry:
    def test_hold_sorts_and_deduplicates(self):
        registry = ResourceLockRegistry()
        keys = [client_key("c1"), caregiver_key("g1"), client_key("c1"), authorization_key("a1")]

        with registry.hold(keys) as held:
            assert held == ["authorization:a1", "caregiver:g1", "client:c1"]

    def test_locks_released_after_block(self):
        registry = ResourceLockRegistry()
        with registry.hold(["caregiver:g1"]):
            pass
        with registry.hold(["caregiver:g1"]) as held:
            assert held == ["caregiver:g1"]

    def test_second_holder_waits(self):
        registry = ResourceLockRegistry()
        order = []
        entered = threading.Event()

        def second():
            with registry.hold(["caregiver:g1"]):
                order.append("second")

        with registry.hold(["caregiver:g1"]):
            thread = threading.Thread(target=second)
            thread.start()
            entered.wait(0.1)
            order.append("first")
        thread.join()

        assert order == ["first", "second"]

    def test_keys_evicted_once_released(self):
        registry = ResourceLockRegistry()

        with registry.hold([caregiver_key("g1"), client_key("c1")]):
            assert registry.active_keys() == ["caregiver:g1", "client:c1"]

        assert registry.active_keys() == []

    def test_waiting_holder_keeps_key_alive(self):
        registry = ResourceLockRegistry()
        released = threading.Event()
        seen = []

        def second():
            with registry.hold(["caregiver:g1"]):
                seen.append(registry.active_keys())

        with registry.hold(["caregiver:g1"]):
            thread = threading.Thread(target=second)
            thread.start()
            released.wait(0.1)
        thread.join()

        assert seen == [["caregiver:g1"]]
        assert registry.active_keys() == []

    def test_key_released_when_block_raises(self):
        registry = ResourceLockRegistry()

        with pytest.raises(RuntimeError), registry.hold(["authorization:a1"]):
            raise RuntimeError("boom")

        assert registry.active_keys() == []
        with registry.hold(["authorization:a1"]) as held:
            assert held == ["authorization:a1"]
