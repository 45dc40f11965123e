"""Tests for topic subscriptions and resubscribe on reconnect."""

import asyncio

import pytest
from aiomqtt import MqttError

from aquafeed_bridge.exceptions import SubscribeError
from aquafeed_bridge.mqtt.connection import ConnectionManager
from aquafeed_bridge.mqtt.subscriptions import SubscriptionCoordinator, SubscriptionGrant
from tests.support.mocks.mock_mqtt import FakeClientFactory, wait_until


@pytest.fixture
def coordinator(connection: ConnectionManager) -> SubscriptionCoordinator:
    """Coordinator with two default topics."""
    return SubscriptionCoordinator(
        connection,
        default_topics=("iot/default_topic", "iot/acks/#"),
        default_qos=1,
    )


class TestSubscriptionGrant:
    """Grant helpers."""

    def test_ok_for_valid_qos(self) -> None:
        """QoS 0, 1 and 2 are successful grants."""
        assert SubscriptionGrant("t", 1, 0).ok
        assert SubscriptionGrant("t", 1, 2).ok

    def test_refused_grant(self) -> None:
        """0x80 means the broker refused the topic."""
        grant = SubscriptionGrant("t", 1, 128)
        assert not grant.ok
        assert grant.to_dict() == {
            "topic": "t",
            "requestedQos": 1,
            "grantedQos": 128,
            "ok": False,
        }


class TestSubscribe:
    """Batched subscribe behaviour."""

    @pytest.mark.asyncio
    async def test_default_topics_in_one_batch(
        self,
        coordinator: SubscriptionCoordinator,
        client_factory: FakeClientFactory,
    ) -> None:
        """Configured topics are sent in a single subscribe call."""
        grants = await coordinator.subscribe()

        assert client_factory.latest.subscribe_calls == [
            [("iot/default_topic", 1), ("iot/acks/#", 1)],
        ]
        assert [g.topic for g in grants] == ["iot/default_topic", "iot/acks/#"]
        assert all(g.ok for g in grants)
        assert coordinator.active_topics == {"iot/default_topic": 1, "iot/acks/#": 1}

    @pytest.mark.asyncio
    async def test_explicit_topics_and_qos(
        self,
        coordinator: SubscriptionCoordinator,
        client_factory: FakeClientFactory,
    ) -> None:
        """Explicit topics replace the defaults for this call."""
        grants = await coordinator.subscribe(["feeder/+/status"], qos=0)

        assert client_factory.latest.subscribe_calls == [[("feeder/+/status", 0)]]
        assert grants == [SubscriptionGrant("feeder/+/status", 0, 0)]

    @pytest.mark.asyncio
    async def test_empty_topic_list_is_a_no_op(
        self,
        coordinator: SubscriptionCoordinator,
        client_factory: FakeClientFactory,
    ) -> None:
        """Nothing to subscribe means no connect at all."""
        assert await coordinator.subscribe([]) == []
        assert client_factory.clients == []

    @pytest.mark.asyncio
    async def test_refused_topic_is_reported_not_raised(
        self,
        coordinator: SubscriptionCoordinator,
        client_factory: FakeClientFactory,
    ) -> None:
        """A refused grant is returned and not remembered."""
        client_factory.grant_overrides["iot/acks/#"] = 128

        grants = await coordinator.subscribe()

        assert [g.ok for g in grants] == [True, False]
        assert coordinator.active_topics == {"iot/default_topic": 1}

    @pytest.mark.asyncio
    async def test_no_connection_raises_subscribe_error(
        self,
        coordinator: SubscriptionCoordinator,
        client_factory: FakeClientFactory,
    ) -> None:
        """A failed connect surfaces as SubscribeError."""
        client_factory.connect_failures = [OSError("refused")]

        with pytest.raises(SubscribeError) as exc_info:
            await coordinator.subscribe()

        assert exc_info.value.topics == ["iot/default_topic", "iot/acks/#"]
        assert coordinator.active_topics == {}

    @pytest.mark.asyncio
    async def test_broker_error_raises_subscribe_error(
        self,
        coordinator: SubscriptionCoordinator,
        client_factory: FakeClientFactory,
    ) -> None:
        """An error from the subscribe call itself surfaces as SubscribeError."""
        client_factory.subscribe_error = MqttError("subscribe failed")

        with pytest.raises(SubscribeError, match="subscribe failed"):
            await coordinator.subscribe()

    @pytest.mark.asyncio
    async def test_forget_clears_remembered_topics(
        self,
        coordinator: SubscriptionCoordinator,
    ) -> None:
        """Forgotten topics are not restored later."""
        await coordinator.subscribe()
        coordinator.forget()
        assert coordinator.active_topics == {}


class TestResubscribe:
    """Subscriptions survive reconnects."""

    @pytest.mark.asyncio
    async def test_resubscribes_after_reconnect(
        self,
        coordinator: SubscriptionCoordinator,
        client_factory: FakeClientFactory,
    ) -> None:
        """The remembered topic set is issued on the new client."""
        await coordinator.subscribe()
        first = client_factory.latest

        first.drop()
        await wait_until(lambda: len(client_factory.connected_clients) == 2)
        second = client_factory.latest
        await wait_until(lambda: len(second.subscribe_calls) == 1)

        assert second is not first
        assert sorted(second.subscribe_calls[0]) == [
            ("iot/acks/#", 1),
            ("iot/default_topic", 1),
        ]

    @pytest.mark.asyncio
    async def test_nothing_to_restore_on_first_connect(
        self,
        coordinator: SubscriptionCoordinator,
        connection: ConnectionManager,
        client_factory: FakeClientFactory,
    ) -> None:
        """Connecting without prior subscriptions issues no subscribe."""
        await connection.acquire()
        await asyncio.sleep(0.01)

        assert client_factory.latest.subscribe_calls == []

    @pytest.mark.asyncio
    async def test_failed_resubscribe_is_logged(
        self,
        coordinator: SubscriptionCoordinator,
        connection: ConnectionManager,
        client_factory: FakeClientFactory,
    ) -> None:
        """A resubscribe error leaves the session up."""
        await coordinator.subscribe()
        client_factory.subscribe_error = MqttError("nope")

        client_factory.latest.drop()
        await wait_until(lambda: len(client_factory.connected_clients) == 2)
        await wait_until(lambda: len(client_factory.latest.subscribe_calls) == 1)

        assert connection.connected
