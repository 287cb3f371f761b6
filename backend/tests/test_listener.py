"""
Chain Mirror - Notification Listener Tests

Subscription drives triggers; polling covers outages and stops once a
fresh subscribe succeeds.
"""

import asyncio

from chainmirror.core.errors import NetworkError
from chainmirror.services.listener import ListenerState, NotificationListener
from conftest import RecordingCoordinator, ScriptedChannel, wait_until


def build_listener(channel, coordinator, poll_interval=0.01, resubscribe_interval=0.2):
    return NotificationListener(
        channel,
        coordinator,
        poll_interval=poll_interval,
        resubscribe_interval=resubscribe_interval,
    )


class TestSubscribed:
    """Happy path: notifications trigger passes."""

    def test_startup_pass_and_notification(self):
        coordinator = RecordingCoordinator()

        async def scenario():
            session = asyncio.Queue()
            listener = build_listener(ScriptedChannel([session]), coordinator)
            listener.start()
            await wait_until(lambda: listener.state == ListenerState.SUBSCRIBED)
            session.put_nowait({"reason": "NewBlock"})
            await wait_until(lambda: "notification" in coordinator.triggers)
            polling = listener.is_polling
            await listener.stop()
            return listener, polling

        listener, polling = asyncio.run(scenario())

        assert coordinator.triggers[0] == "startup"
        assert coordinator.triggers.count("notification") == 1
        assert not polling
        assert listener.notifications_received == 1
        assert listener.state == ListenerState.DISCONNECTED


class TestFailover:
    """Polling fallback and recovery."""

    def test_subscribe_failure_polls_then_recovers(self):
        coordinator = RecordingCoordinator()

        async def scenario():
            session = asyncio.Queue()
            channel = ScriptedChannel([NetworkError("refused"), session])
            listener = build_listener(channel, coordinator)
            listener.start()

            await wait_until(lambda: "poll" in coordinator.triggers)
            assert listener.subscribe_failures == 1

            await wait_until(lambda: listener.state == ListenerState.SUBSCRIBED)
            assert not listener.is_polling
            polls = coordinator.triggers.count("poll")
            await asyncio.sleep(0.05)
            polls_after = coordinator.triggers.count("poll")

            await listener.stop()
            return channel, polls, polls_after

        channel, polls, polls_after = asyncio.run(scenario())

        assert channel.attempts == 2
        assert polls >= 1
        assert polls_after == polls

    def test_dropped_stream_falls_back_to_polling(self):
        coordinator = RecordingCoordinator()

        async def scenario():
            first, second = asyncio.Queue(), asyncio.Queue()
            listener = build_listener(ScriptedChannel([first, second]), coordinator)
            listener.start()
            await wait_until(lambda: listener.state == ListenerState.SUBSCRIBED)

            first.put_nowait(NetworkError("connection lost"))
            await wait_until(lambda: listener.is_polling)
            assert listener.state == ListenerState.POLLING

            await wait_until(lambda: listener.state == ListenerState.SUBSCRIBED)
            recovered = not listener.is_polling
            await listener.stop()
            return recovered

        assert asyncio.run(scenario())

    def test_restored_subscription_requests_catch_up_pass(self):
        """Changes between the last poll and the new subscription are picked up."""
        coordinator = RecordingCoordinator()

        async def scenario():
            session = asyncio.Queue()
            channel = ScriptedChannel([NetworkError("refused"), session])
            listener = build_listener(channel, coordinator, poll_interval=10, resubscribe_interval=0.05)
            listener.start()
            await wait_until(lambda: listener.state == ListenerState.SUBSCRIBED)
            await listener.stop()

        asyncio.run(scenario())

        assert coordinator.triggers == ["startup", "resubscribed"]

    def test_first_subscription_adds_no_extra_pass(self):
        coordinator = RecordingCoordinator()

        async def scenario():
            listener = build_listener(ScriptedChannel([asyncio.Queue()]), coordinator)
            listener.start()
            await wait_until(lambda: listener.state == ListenerState.SUBSCRIBED)
            await listener.stop()

        asyncio.run(scenario())

        assert coordinator.triggers == ["startup"]

    def test_stop_cancels_polling(self):
        coordinator = RecordingCoordinator()

        async def scenario():
            listener = build_listener(ScriptedChannel([]), coordinator, resubscribe_interval=10)
            listener.start()
            await wait_until(lambda: listener.is_polling)
            await listener.stop()
            return listener

        listener = asyncio.run(scenario())

        assert not listener.is_polling
        assert listener.state == ListenerState.DISCONNECTED
