import importlib
import io
import json
import logging
import unittest
import warnings
from contextlib import redirect_stderr
from unittest import mock

from pythonjsonlogger.json import JsonFormatter

from chat_gateway import logging_utils, server
from chat_gateway.logging_utils import setup_logging
from chat_gateway.ws_transport import RUNTIME_KEY


class TestGatewayServer(unittest.TestCase):
    def test_serve_parser_defaults(self):
        args = server.build_parser().parse_args(["serve"])

        self.assertEqual(args.host, "127.0.0.1")
        self.assertEqual(args.port, 8080)
        self.assertIsNone(args.users)
        self.assertEqual(args.ping_interval, 30)
        self.assertEqual(args.log_level, "INFO")

    def test_serve_requires_subcommand(self):
        with redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            server.main([])

    def test_serve_builds_app_with_demo_users(self):
        with mock.patch.object(server.web, "run_app") as run_app, mock.patch.object(server, "setup_logging"):
            exit_code = server.main(["serve", "--port", "9999", "--ping-interval", "5"])

        self.assertEqual(exit_code, 0)
        app = run_app.call_args.args[0]
        self.assertEqual(run_app.call_args.kwargs["port"], 9999)
        runtime = app[RUNTIME_KEY]
        self.assertEqual(sorted(runtime.directory.ids()), ["u-alice", "u-bob", "u-carol"])


class TestJsonLogging(unittest.TestCase):
    def setUp(self):
        root = logging.getLogger()
        self._saved = (root.level, list(root.handlers))

    def tearDown(self):
        root = logging.getLogger()
        root.setLevel(self._saved[0])
        root.handlers = self._saved[1]
        logging.getLogger("aiohttp.access").disabled = False

    def test_records_are_json_lines(self):
        buffer = io.StringIO()
        with mock.patch("sys.stdout", new=buffer):
            setup_logging("debug")
        logging.getLogger("chat_gateway.test").info("hello", extra={"thread_id": "t1"})

        record = json.loads(buffer.getvalue().strip().splitlines()[-1])
        self.assertEqual(record["message"], "hello")
        self.assertEqual(record["level"], "INFO")
        self.assertEqual(record["name"], "chat_gateway.test")
        self.assertEqual(record["thread_id"], "t1")
        self.assertTrue(record["ts"].endswith("Z"))

    def test_formatter_uses_current_json_module(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            module = importlib.reload(logging_utils)

        self.assertTrue(issubclass(module.GatewayJsonFormatter, JsonFormatter))


if __name__ == "__main__":
    unittest.main()
