#!/usr/bin/env python3
"""
Unit tests for change propagation between session instances.
"""

import asyncio
from unittest.mock import Mock

import pytest

from session_shared.models import StorageChange
from session_client.auth.sync_bus import InProcessTransport, StorageWatchTransport, SyncBus
from session_client.auth.token_storage import MemoryStorage


class TestSyncBus:
    """Test in-process delivery."""

    @pytest.fixture
    def bus(self):
        """Create a bus with the in-process transport."""
        return SyncBus()

    def test_default_transport(self, bus):
        """Test the in-process transport is attached by default."""
        assert isinstance(bus.transport(InProcessTransport), InProcessTransport)
        assert bus.transport(StorageWatchTransport) is None

    def test_origin_never_receives_own_write(self, bus):
        """Test the writer is excluded from delivery."""
        a, b = Mock(), Mock()
        bus.subscribe('a', a)
        bus.subscribe('b', b)

        bus.publish('k', 'v', origin='a')

        a.assert_not_called()
        b.assert_called_once_with(StorageChange(key='k', value='v', origin='a'))

    def test_duplicate_value_is_dropped(self, bus):
        """Test a value equal to the last one seen is not delivered again."""
        handler = Mock()
        bus.subscribe('b', handler)

        bus.publish('k', 'v', origin='a')
        bus.publish('k', 'v', origin='a')
        bus.publish('k', 'w', origin='a')

        assert [c.args[0].value for c in handler.call_args_list] == ['v', 'w']

    def test_value_written_by_subscriber_is_not_echoed_back(self, bus):
        """Test a subscriber does not see a value it wrote itself, even from another writer."""
        handler = Mock()
        bus.subscribe('b', handler)

        bus.publish('k', 'v', origin='b')
        bus.publish('k', 'v', origin='a')

        handler.assert_not_called()

    def test_changes_delivered_in_write_order(self, bus):
        """Test per-key ordering follows write order."""
        received = []
        bus.subscribe('b', lambda change: received.append((change.key, change.value)))

        bus.publish('k1', '1', origin='a')
        bus.publish('k2', '2', origin='a')
        bus.publish('k1', None, origin='a')

        assert received == [('k1', '1'), ('k2', '2'), ('k1', None)]

    def test_handler_exception_does_not_block_others(self, bus):
        """Test one failing subscriber does not stop delivery."""
        failing = Mock(side_effect=RuntimeError("handler broke"))
        healthy = Mock()
        bus.subscribe('a', failing)
        bus.subscribe('b', healthy)

        bus.publish('k', 'v', origin='c')

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_unsubscribe(self, bus):
        """Test unsubscribed handlers receive nothing."""
        handler = Mock()
        unsubscribe = bus.subscribe('b', handler)
        unsubscribe()

        bus.publish('k', 'v', origin='a')

        handler.assert_not_called()
        assert bus.subscriber_count == 0

    def test_unsubscribe_during_dispatch(self, bus):
        """Test a subscriber removed by an earlier handler is skipped."""
        later = Mock()
        bus.subscribe('a', lambda change: bus.unsubscribe('b'))
        bus.subscribe('b', later)

        bus.publish('k', 'v', origin='c')

        later.assert_not_called()

    def test_duplicate_subscriber_id(self, bus):
        """Test subscriber ids must be unique."""
        bus.subscribe('a', Mock())
        with pytest.raises(ValueError, match="already registered"):
            bus.subscribe('a', Mock())


class TestStorageWatchTransport:
    """Test delivery of writes made by other processes."""

    @pytest.fixture
    def shared(self):
        """Create the storage area both 'processes' see."""
        return MemoryStorage({'existing': '0'})

    @pytest.fixture
    def watched_bus(self, shared):
        """Create a bus that only watches storage."""
        return SyncBus([StorageWatchTransport(shared, interval=0.01)])

    def test_foreign_writes_are_reported(self, shared, watched_bus):
        """Test a poll reports keys changed behind the bus's back."""
        handler = Mock()
        watched_bus.subscribe('local', handler)

        shared.set('auth.access_token', 'tok')
        shared.remove('existing')
        changes = watched_bus.transport(StorageWatchTransport).poll()

        assert {(c.key, c.value) for c in changes} == {('auth.access_token', 'tok'), ('existing', None)}
        assert handler.call_count == 2
        assert all(c.args[0].origin is None for c in handler.call_args_list)

    def test_own_writes_are_not_reported(self, shared, watched_bus):
        """Test writes published through the bus do not come back from a poll."""
        handler = Mock()
        watched_bus.subscribe('local', handler)

        shared.set('k', 'v')
        watched_bus.publish('k', 'v', origin='local')

        assert watched_bus.transport(StorageWatchTransport).poll() == []
        handler.assert_not_called()

    def test_poll_without_changes(self, watched_bus):
        """Test an unchanged area reports nothing."""
        assert watched_bus.transport(StorageWatchTransport).poll() == []

    @pytest.mark.asyncio
    async def test_polling_task(self, shared, watched_bus):
        """Test the watch task picks up foreign writes on its own."""
        received = []
        watched_bus.subscribe('local', received.append)
        transport = watched_bus.transport(StorageWatchTransport)
        transport.start()
        assert transport.watching

        shared.set('profile.snapshot', '{}')
        for _ in range(50):
            if received:
                break
            await asyncio.sleep(0.01)

        watched_bus.close()
        assert received[0].key == 'profile.snapshot'
        assert not transport.watching
