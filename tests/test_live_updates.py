"""Tests for the live-update hub and WebSocket endpoint."""

import pytest
from fastapi.testclient import TestClient

from leadflow.messaging.live import (
    CONTACT_UPDATE,
    NEW_MESSAGE,
    LiveEvent,
    LiveUpdateHub,
    SubscriptionDropped,
)

from .helpers import inbound_message, make_app, whatsapp_payload


class TestLiveUpdateHub:
    """Tests for LiveUpdateHub fan-out."""

    def test_publish_reaches_every_subscriber(self):
        hub = LiveUpdateHub()
        first = hub.subscribe()
        second = hub.subscribe()

        delivered = hub.publish(NEW_MESSAGE, {"contactId": "+1"})

        assert delivered == 2
        assert first.queue.get_nowait() == LiveEvent(NEW_MESSAGE, {"contactId": "+1"})
        assert second.queue.get_nowait().event == NEW_MESSAGE

    def test_publish_order_preserved(self):
        hub = LiveUpdateHub()
        subscription = hub.subscribe()

        for i in range(5):
            hub.publish(CONTACT_UPDATE, {"n": i})

        assert [subscription.queue.get_nowait().data["n"] for _ in range(5)] == list(range(5))

    def test_closed_subscription_stops_receiving(self):
        hub = LiveUpdateHub()
        subscription = hub.subscribe()
        subscription.close()

        assert hub.publish(NEW_MESSAGE, {}) == 0
        assert subscription.queue.empty()
        assert hub.subscriber_count == 0

    def test_close_twice_is_harmless(self):
        hub = LiveUpdateHub()
        subscription = hub.subscribe()
        subscription.close()
        subscription.close()
        assert hub.subscriber_count == 0

    def test_publish_without_subscribers(self):
        assert LiveUpdateHub().publish(NEW_MESSAGE, {"x": 1}) == 0

    @pytest.mark.anyio
    async def test_next_event_awaits(self):
        hub = LiveUpdateHub()
        subscription = hub.subscribe()
        hub.publish(NEW_MESSAGE, {"a": 1})

        event = await subscription.next_event()

        assert event.to_dict() == {"event": NEW_MESSAGE, "data": {"a": 1}}

    def test_stalled_subscriber_is_dropped(self):
        hub = LiveUpdateHub(max_pending=2)
        stalled = hub.subscribe()
        reading = hub.subscribe()

        hub.publish(NEW_MESSAGE, {"n": 0})
        reading.queue.get_nowait()
        hub.publish(NEW_MESSAGE, {"n": 1})
        reading.queue.get_nowait()
        delivered = hub.publish(NEW_MESSAGE, {"n": 2})

        assert delivered == 1
        assert stalled.dropped
        assert hub.subscriber_count == 1
        assert reading.queue.get_nowait().data == {"n": 2}

    @pytest.mark.anyio
    async def test_dropped_subscription_raises_on_next_event(self):
        hub = LiveUpdateHub(max_pending=1)
        subscription = hub.subscribe()
        hub.publish(NEW_MESSAGE, {"n": 0})
        hub.publish(NEW_MESSAGE, {"n": 1})

        with pytest.raises(SubscriptionDropped):
            await subscription.next_event()

    def test_non_positive_bound_rejected(self):
        with pytest.raises(ValueError):
            LiveUpdateHub(max_pending=0)


class TestWebSocket:
    """WS /ws forwards hub events to the client."""

    def test_webhook_message_is_pushed(self, tmp_path):
        app, services = make_app(tmp_path)
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as websocket:
                assert services.hub.subscriber_count == 1
                client.post(
                    "/webhook",
                    json=whatsapp_payload(messages=[inbound_message("wamid.1", text="Hi")]),
                )

                first = websocket.receive_json()
                second = websocket.receive_json()

            assert first["event"] == NEW_MESSAGE
            assert first["data"]["contactId"] == "+917359275948"
            assert first["data"]["message"]["id"] == "wamid.1"
            assert second["event"] == CONTACT_UPDATE
            assert second["data"]["lastMessage"] == "Hi"
