import unittest

from aiohttp.test_utils import TestServer

from chat_gateway.directory import User
from chat_gateway.ws_transport import RUNTIME_KEY, create_app

USERS = [
    User(id="alice", name="Alice", email="alice@example.com"),
    User(id="bob", name="Bob", email="bob@example.com"),
    User(id="carol", name="Carol", email="carol@example.com"),
]


class GatewayHarness(unittest.IsolatedAsyncioTestCase):
    """Runs the reference gateway on a real port for client tests."""

    async def asyncSetUp(self):
        self.app = create_app(users=USERS, ping_interval_s=3600)
        self.runtime = self.app[RUNTIME_KEY]
        self.team_id = self.runtime.threads.team_thread.id
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.base_url = str(self.server.make_url("/"))

    async def asyncTearDown(self):
        await self.server.close()

    def post_as(self, user_id, text, *, thread_id=None, client_msg_id=None):
        message, _ = self.runtime.send_message(
            user_id,
            thread_id or self.team_id,
            text,
            client_msg_id or f"c-server-{len(self.runtime.log.list_before(thread_id or self.team_id)) + 1}",
        )
        return message
