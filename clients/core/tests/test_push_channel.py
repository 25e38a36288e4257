import asyncio

from gateway_harness import GatewayHarness

from chat_client.push_channel import PushChannel


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class PushChannelTests(GatewayHarness):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.channel = PushChannel(self.base_url, reconnect_delay_s=0.1)
        self.events = []
        for event_type in ("connected", "disconnected", "new_message", "typing", "unread_update", "receipt", "error"):
            self.channel.subscribe(event_type, lambda body, t=event_type: self.events.append((t, body)))

    async def asyncTearDown(self):
        await self.channel.disconnect()
        await super().asyncTearDown()

    def of_type(self, event_type):
        return [body for t, body in self.events if t == event_type]

    def subscription_for(self, session_id):
        for subs in self.runtime.hub._subscriptions.values():
            for subscription in subs:
                if subscription.session_id == session_id:
                    return subscription
        return None

    def rooms_of(self, session_id):
        subscription = self.subscription_for(session_id)
        return subscription.rooms if subscription is not None else set()

    async def test_connect_is_idempotent_and_reports_ready(self):
        self.post_as("bob", "before connect")

        await self.channel.connect("alice")
        await self.channel.connect("alice")
        await wait_for(lambda: self.channel.connected)

        connected = self.of_type("connected")
        self.assertEqual(len(connected), 1)
        self.assertEqual(connected[0]["user_id"], "alice")
        self.assertEqual(connected[0]["total_unread"], 1)
        self.assertEqual(len(self.runtime.sessions), 1)

    async def test_session_scoped_events_arrive_without_joining(self):
        await self.channel.connect("alice")
        await wait_for(lambda: self.channel.connected)

        self.post_as("bob", "hello")

        await wait_for(lambda: self.of_type("new_message") and self.of_type("unread_update"))
        self.assertEqual(self.of_type("new_message")[0]["message"]["text"], "hello")
        self.assertEqual(self.of_type("unread_update")[0]["total_unread"], 1)

    async def test_send_primitives_report_disconnected(self):
        self.assertFalse(await self.channel.send_message(self.team_id, "hi", "c-1-aa"))
        self.assertFalse(await self.channel.send_typing(self.team_id, True))

    async def test_send_message_is_echoed(self):
        await self.channel.connect("alice")
        await wait_for(lambda: self.channel.connected)

        self.assertTrue(await self.channel.send_message(self.team_id, "hi", "c-1-aa"))

        await wait_for(lambda: self.of_type("new_message"))
        self.assertEqual(self.of_type("new_message")[0]["message"]["client_msg_id"], "c-1-aa")

    async def test_error_frame_is_dispatched(self):
        await self.channel.connect("alice")
        await wait_for(lambda: self.channel.connected)

        await self.channel.send_message(self.team_id, "", "c-1-aa")

        await wait_for(lambda: self.of_type("error"))
        error = self.of_type("error")[0]
        self.assertEqual(error["client_msg_id"], "c-1-aa")
        self.assertEqual(error["code"], "invalid_request")

    async def test_typing_requires_joined_room(self):
        bob = PushChannel(self.base_url, reconnect_delay_s=0.1)
        try:
            await bob.connect("bob")
            await self.channel.connect("alice")
            await wait_for(lambda: bob.connected and self.channel.connected)

            await bob.send_typing(self.team_id, False)
            await self.channel.join_room(self.team_id)
            await bob.join_room(self.team_id)
            await wait_for(
                lambda: self.team_id in self.rooms_of(bob.session_id)
                and self.team_id in self.rooms_of(self.channel.session_id)
            )
            await bob.send_typing(self.team_id, True)

            await wait_for(lambda: self.of_type("typing"))
            await asyncio.sleep(0.1)
            self.assertEqual(
                self.of_type("typing"),
                [{"thread_id": self.team_id, "user_id": "bob", "is_typing": True}],
            )
        finally:
            await bob.disconnect()

    async def test_handler_failure_does_not_stop_dispatch(self):
        def broken(body):
            raise RuntimeError("handler bug")

        channel = PushChannel(self.base_url)
        seen = []
        channel.subscribe("connected", broken)
        channel.subscribe("connected", seen.append)
        try:
            with self.assertLogs("chat_client.push_channel", level="ERROR"):
                await channel.connect("alice")
                await wait_for(lambda: seen)
        finally:
            await channel.disconnect()

    async def test_subscribe_rejects_unknown_event(self):
        with self.assertRaises(ValueError):
            self.channel.subscribe("presence", lambda body: None)

    async def test_lease_reference_counts_connection(self):
        async with self.channel.lease("alice"):
            async with self.channel.lease("alice"):
                await wait_for(lambda: self.channel.connected)
                self.assertEqual(self.channel.refcount, 2)
            self.assertTrue(self.channel.connected)
        self.assertFalse(self.channel.connected)
        self.assertEqual(self.channel.refcount, 0)
        await wait_for(lambda: len(self.runtime.sessions) == 0)

    async def test_lease_releases_on_error(self):
        with self.assertRaises(RuntimeError):
            async with self.channel.lease("alice"):
                await wait_for(lambda: self.channel.connected)
                raise RuntimeError("consumer crashed")

        self.assertEqual(self.channel.refcount, 0)
        self.assertFalse(self.channel.connected)

    async def test_switching_users_tears_down_previous_connection(self):
        await self.channel.connect("alice")
        await wait_for(lambda: self.channel.connected)

        await self.channel.connect("bob")
        await wait_for(lambda: self.channel.connected)

        self.assertEqual(self.channel.user_id, "bob")
        await wait_for(lambda: not self.runtime.hub.is_online("alice"))
        self.assertTrue(self.runtime.hub.is_online("bob"))

    async def test_reconnects_and_rejoins_rooms(self):
        await self.channel.connect("alice")
        await wait_for(lambda: self.channel.connected)
        await self.channel.join_room(self.team_id)
        first_session = self.channel.session_id
        await wait_for(lambda: self.team_id in self.rooms_of(first_session))

        # overflow the outbound queue so the gateway drops the socket
        stale = self.subscription_for(first_session)
        for _ in range(1100):
            stale.deliver({"v": 1, "t": "pong"})

        await wait_for(lambda: self.of_type("disconnected"))
        await wait_for(lambda: self.channel.connected)

        self.assertEqual(len(self.of_type("connected")), 2)
        self.assertNotEqual(self.channel.session_id, first_session)
        self.assertEqual(self.channel.rooms, {self.team_id})
        await wait_for(lambda: self.team_id in self.rooms_of(self.channel.session_id))

    async def test_unknown_user_is_reported_as_error(self):
        await self.channel.connect("mallory")

        await wait_for(lambda: self.of_type("error"))

        self.assertEqual(self.of_type("error")[0]["code"], "unauthorized")
        self.assertFalse(self.channel.connected)
        self.assertEqual(self.of_type("connected"), [])
