import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from gateway_harness import GatewayHarness

from chat_client.config import ClientConfig
from chat_client.gateway_client import GatewayError
from chat_client.models import STATUS_FAILED, STATUS_SENDING
from chat_client.push_channel import PushChannel
from chat_client.session import ChatSession

DEAD_URL = "http://127.0.0.1:1/"


async def eventually(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class ChatSessionTests(GatewayHarness):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.sessions = []

    async def asyncTearDown(self):
        for session in self.sessions:
            await session.close()
        await super().asyncTearDown()

    async def open_session(self, user_id, *, channel=None, notify_sink=None, **overrides):
        settings = dict(
            reconnect_delay_s=0.1,
            send_timeout_s=2.0,
            typing_quiet_s=0.2,
            typing_expiry_s=0.3,
            poll_interval_s=0.2,
        )
        settings.update(overrides)
        config = ClientConfig(self.base_url, user_id, display_name=user_id.title(), **settings)
        session = ChatSession(config, channel=channel, notify_sink=notify_sink)
        self.sessions.append(session)
        await session.start()
        if channel is None:
            await eventually(lambda: session.connected)
        return session

    def confirmed_texts(self, session, thread_id):
        return [m.text for m in session.store.messages(thread_id) if not m.is_local]

    def rooms_of(self, session):
        for subscription in self.runtime.hub._subscriptions.get(session.config.user_id, []):
            if subscription.session_id == session.channel.session_id:
                return subscription.rooms
        return set()

    async def test_sent_message_appears_once_everywhere(self):
        alice = await self.open_session("alice")
        bob = await self.open_session("bob")
        await alice.open_thread(self.team_id)

        client_msg_id = alice.send("hello team")

        await eventually(lambda: self.confirmed_texts(alice, self.team_id) == ["hello team"])
        await eventually(lambda: self.confirmed_texts(bob, self.team_id) == ["hello team"])
        await asyncio.sleep(0.1)
        self.assertEqual(len(alice.store.messages(self.team_id)), 1)
        self.assertEqual(alice.store.messages(self.team_id)[0].client_msg_id, client_msg_id)
        self.assertEqual(len(self.runtime.log.list_before(self.team_id)), 1)

    async def test_messages_stay_ordered_by_seq(self):
        alice = await self.open_session("alice")
        await alice.open_thread(self.team_id)

        for i in range(5):
            self.post_as("bob", f"m{i}")
        alice.send("mine")

        await eventually(lambda: len(self.confirmed_texts(alice, self.team_id)) == 6)
        seqs = [m.seq for m in alice.store.messages(self.team_id)]
        self.assertEqual(seqs, sorted(seqs))
        self.assertEqual(seqs, list(range(1, 7)))

    async def test_history_backfills_earlier_messages(self):
        for i in range(5):
            self.post_as("bob", f"m{i}")

        alice = await self.open_session("alice", history_page_size=2)
        await alice.open_thread(self.team_id)
        self.assertEqual(self.confirmed_texts(alice, self.team_id), ["m3", "m4"])

        await alice.load_older(self.team_id)
        await alice.load_older(self.team_id)
        self.assertEqual(self.confirmed_texts(alice, self.team_id), ["m0", "m1", "m2", "m3", "m4"])
        self.assertEqual(await alice.load_older(self.team_id), [])

    async def test_frames_dropped_during_outage_are_recovered(self):
        alice = await self.open_session("alice")
        await alice.open_thread(self.team_id)
        await eventually(lambda: self.team_id in self.rooms_of(alice))

        # fill the outbound queue so the gateway drops both the socket and the next push
        stale = self.runtime.hub._subscriptions["alice"][0]
        for _ in range(1100):
            stale.deliver({"v": 1, "t": "pong"})
        self.post_as("bob", "sent while dropped")

        await eventually(lambda: "sent while dropped" in self.confirmed_texts(alice, self.team_id))
        await eventually(lambda: alice.connected)

    async def test_resync_fills_gaps_longer_than_one_page(self):
        self.post_as("bob", "m0")
        self.post_as("bob", "m1")
        alice = await self.open_session(
            "alice",
            channel=PushChannel(DEAD_URL, reconnect_delay_s=0.1),
            history_page_size=3,
            poll_interval_s=60,
        )
        await alice.open_thread(self.team_id)
        self.assertEqual(self.confirmed_texts(alice, self.team_id), ["m0", "m1"])

        for i in range(2, 8):
            self.post_as("bob", f"m{i}")
        await alice.resync()

        self.assertEqual(self.confirmed_texts(alice, self.team_id), [f"m{i}" for i in range(8)])
        self.assertEqual([m.seq for m in alice.store.messages(self.team_id)], list(range(1, 9)))

    async def test_sending_text_directly_ends_typing(self):
        alice = await self.open_session("alice", typing_quiet_s=5.0, typing_expiry_s=5.0)
        bob = await self.open_session("bob", typing_quiet_s=5.0, typing_expiry_s=5.0)
        await alice.open_thread(self.team_id)
        await bob.open_thread(self.team_id)
        await eventually(lambda: self.team_id in self.rooms_of(alice) and self.team_id in self.rooms_of(bob))

        bob.update_draft("half a thought")
        await eventually(lambda: alice.store.typing.typing_users(self.team_id) == ["bob"])

        self.assertIsNotNone(bob.send("x"))

        self.assertEqual(bob.composer.draft, "")
        await eventually(lambda: alice.store.typing.typing_users(self.team_id) == [], timeout=1.0)
        await eventually(lambda: self.confirmed_texts(alice, self.team_id) == ["x"])

    async def test_presence_tracks_peers(self):
        await self.open_session("bob")
        alice = await self.open_session("alice")
        self.assertEqual(alice.store.online_users, {"alice", "bob"})

        carol = await self.open_session("carol")
        await eventually(lambda: "carol" in alice.store.online_users)
        await carol.close()
        await eventually(lambda: "carol" not in alice.store.online_users)

        users = await alice.list_users()
        self.assertEqual([(u.id, u.name) for u in users], [("bob", "Bob"), ("carol", "Carol")])

    async def test_http_fallback_when_push_is_down(self):
        alice = await self.open_session("alice", channel=PushChannel(DEAD_URL, reconnect_delay_s=0.1))
        await alice.open_thread(self.team_id)

        alice.send("over http")

        await eventually(lambda: self.confirmed_texts(alice, self.team_id) == ["over http"])
        self.assertFalse(alice.connected)

    async def test_polling_picks_up_messages_while_push_is_down(self):
        alice = await self.open_session("alice", channel=PushChannel(DEAD_URL, reconnect_delay_s=0.1))
        await alice.open_thread(self.team_id)

        self.post_as("bob", "polled")

        await eventually(lambda: self.confirmed_texts(alice, self.team_id) == ["polled"])

    async def test_failed_send_can_be_retried(self):
        alice = await self.open_session("alice", channel=PushChannel(DEAD_URL, reconnect_delay_s=0.1))
        await alice.open_thread(self.team_id)

        with mock.patch.object(
            alice.gateway, "send_message", side_effect=GatewayError(0, "unreachable", "offline")
        ):
            client_msg_id = alice.send("offline draft")
            await eventually(lambda: alice.store.placeholder(client_msg_id).status == STATUS_FAILED)

        self.assertEqual(len(self.runtime.log.list_before(self.team_id)), 0)
        self.assertTrue(alice.retry(client_msg_id))

        await eventually(lambda: self.confirmed_texts(alice, self.team_id) == ["offline draft"])
        self.assertIsNone(alice.store.placeholder(client_msg_id))

    async def test_retry_after_lost_response_does_not_duplicate(self):
        alice = await self.open_session(
            "alice", channel=PushChannel(DEAD_URL, reconnect_delay_s=0.1), poll_interval_s=60
        )
        await alice.open_thread(self.team_id)
        real_send = alice.gateway.send_message

        async def persisted_then_lost(thread_id, text, client_msg_id):
            await real_send(thread_id, text, client_msg_id)
            raise GatewayError(0, "unreachable", "connection reset")

        with mock.patch.object(alice.gateway, "send_message", side_effect=persisted_then_lost):
            client_msg_id = alice.send("exactly once")
            await eventually(lambda: alice.store.placeholder(client_msg_id).status == STATUS_FAILED)

        self.assertTrue(alice.retry(client_msg_id))
        self.assertEqual(alice.store.placeholder(client_msg_id).status, STATUS_SENDING)

        await eventually(lambda: self.confirmed_texts(alice, self.team_id) == ["exactly once"])
        self.assertEqual(len(alice.store.messages(self.team_id)), 1)
        self.assertEqual(len(self.runtime.log.list_before(self.team_id)), 1)

    async def test_unread_total_matches_thread_counts(self):
        direct, _ = self.runtime.threads.get_or_create_direct("bob", "alice")
        alice = await self.open_session("alice")

        self.post_as("bob", "team one")
        self.post_as("bob", "team two")
        self.post_as("bob", "direct one", thread_id=direct.id)

        await eventually(lambda: alice.store.unread.total == 3)
        per_thread = alice.store.unread.per_thread()
        self.assertEqual(sum(per_thread.values()), alice.store.unread.total)
        self.assertEqual(per_thread[self.team_id], 2)
        self.assertEqual(per_thread[direct.id], 1)
        self.assertEqual(self.runtime.unread_snapshot("alice")["total_unread"], 3)
        self.assertIn(direct.id, alice.store.threads)

    async def test_opening_a_thread_marks_it_read_everywhere(self):
        self.post_as("bob", "one")
        self.post_as("bob", "two")
        alice = await self.open_session("alice")
        self.assertEqual(alice.store.unread.count(self.team_id), 2)

        await alice.open_thread(self.team_id)

        self.assertEqual(alice.store.unread.total, 0)
        self.assertEqual(alice.store.threads[self.team_id].unread_count, 0)
        self.assertEqual(self.runtime.unread_snapshot("alice")["total_unread"], 0)

    async def test_arrivals_in_the_open_thread_stay_read(self):
        alice = await self.open_session("alice")
        await alice.open_thread(self.team_id)

        self.post_as("bob", "seen immediately")

        await eventually(lambda: self.confirmed_texts(alice, self.team_id) == ["seen immediately"])
        await eventually(lambda: self.runtime.unread_snapshot("alice")["total_unread"] == 0)
        self.assertEqual(alice.store.unread.total, 0)

    async def test_two_tabs_of_the_same_user(self):
        tab_one = await self.open_session("alice")
        tab_two = await self.open_session("alice")
        await tab_one.open_thread(self.team_id)

        tab_one.send("from tab one")

        await eventually(lambda: self.confirmed_texts(tab_two, self.team_id) == ["from tab one"])
        await eventually(lambda: self.confirmed_texts(tab_one, self.team_id) == ["from tab one"])
        self.assertEqual(tab_two.store.unread.total, 0)
        self.assertEqual(len(tab_one.store.messages(self.team_id)), 1)

    async def test_typing_indicator_round_trip(self):
        alice = await self.open_session("alice")
        bob = await self.open_session("bob")
        await alice.open_thread(self.team_id)
        await bob.open_thread(self.team_id)
        await eventually(lambda: self.team_id in self.rooms_of(alice) and self.team_id in self.rooms_of(bob))

        bob.update_draft("hel")

        await eventually(lambda: alice.store.typing.typing_users(self.team_id) == ["bob"])
        await eventually(lambda: alice.store.typing.typing_users(self.team_id) == [], timeout=2.0)
        self.assertEqual(bob.store.typing.typing_users(self.team_id), [])

    async def test_notifications_fire_once_per_message(self):
        notified = []
        alice = await self.open_session("alice", notify_sink=notified.append)

        message = self.post_as("bob", "ding")

        await eventually(lambda: notified)
        await alice.load_history(self.team_id)
        await alice.resync()
        await asyncio.sleep(0.1)
        self.assertEqual([m.id for m in notified], [message.id])

    async def test_sound_preference_is_persisted(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "preferences.json"
            notified = []
            alice = await self.open_session("alice", notify_sink=notified.append, preferences_path=path)

            alice.set_sound_enabled(False)
            self.post_as("bob", "quiet please")
            await eventually(lambda: self.confirmed_texts(alice, self.team_id) == ["quiet please"])

            self.assertEqual(notified, [])
            again = ChatSession(ClientConfig(self.base_url, "alice", preferences_path=path))
            self.assertFalse(again.preferences.sound_enabled)
            await again.gateway.close()

    async def test_close_releases_push_connection(self):
        alice = await self.open_session("alice")
        await alice.open_thread(self.team_id)

        await alice.close()

        self.assertEqual(alice.channel.refcount, 0)
        self.assertFalse(alice.channel.connected)
        await eventually(lambda: not self.runtime.hub.is_online("alice"))


if __name__ == "__main__":
    unittest.main()
