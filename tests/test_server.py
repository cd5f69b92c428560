import asyncio
import dataclasses
import json
import os
import tempfile
import threading
import unittest

import websockets

from panelsync.config import PanelConfig
from panelsync.core.exceptions import CoreLoopNotRunningError
from panelsync.patches import MessageType, decode_message, encode_message
from panelsync.server import PanelServer

from fakes import RecordingBridge


def _test_config() -> PanelConfig:
    return PanelConfig(
        host="127.0.0.1",
        port=0,
        capture_console=False,
        sample_interval=3600.0,
        uptime_interval=3600.0,
        permissions_file="",
    )


async def _recv(ws, timeout: float = 5.0):
    return decode_message(await asyncio.wait_for(ws.recv(), timeout=timeout))


class TestPanelServer(unittest.IsolatedAsyncioTestCase):
    """End-to-end tests over a real WebSocket connection."""

    async def asyncSetUp(self):
        self.bridge = RecordingBridge()
        self.server = PanelServer(_test_config(), bridge=self.bridge, reader=lambda: (12.5, 40.0))
        await self.server.start()
        self.url = f"ws://127.0.0.1:{self.server.port}"

    async def asyncTearDown(self):
        await self.server.stop()

    async def test_login_snapshot_and_patches(self):
        async with websockets.connect(self.url) as ws:
            await ws.send(encode_message(MessageType.LOGIN, {"username": "admin", "password": "admin"}))
            messages = [await _recv(ws) for _ in range(4)]

            self.assertEqual([t for t, _ in messages], [
                MessageType.LOGIN,
                MessageType.TOAST,
                MessageType.SYNC,
                MessageType.RESOURCE_USAGE,
            ])
            snapshot = messages[2][1]
            self.assertEqual(snapshot["path"], [])
            self.assertEqual(snapshot["value"]["status"], 1)
            self.assertEqual(snapshot["value"]["process"]["usage"]["cpu"][0]["percent"], 12.5)

            self.server.tree["server"]["version"] = "1.21.0"
            self.assertEqual(await _recv(ws), (MessageType.SYNC, {"path": ["server", "version"], "value": "1.21.0"}))

            await ws.send(encode_message(MessageType.SEND_COMMAND, {"command": "list"}))
            self.assertEqual(await _recv(ws), (MessageType.TOAST, {"message": "Command sent.", "level": "success"}))
            self.assertEqual(self.bridge.calls, [("execute_command", ("list",))])
            self.assertEqual(self.server.session_count, 1)

    async def test_bad_login_gets_no_patches(self):
        async with websockets.connect(self.url) as ws:
            await ws.send(encode_message(MessageType.LOGIN, {"username": "admin", "password": "nope"}))
            self.assertEqual(await _recv(ws), (MessageType.TOAST, {"message": "Invalid username or password.", "level": "danger"}))

            self.server.tree["server"]["version"] = "9.9.9"
            with self.assertRaises(asyncio.TimeoutError):
                await _recv(ws, timeout=0.2)

    async def test_disconnect_removes_subscriber(self):
        async with websockets.connect(self.url) as ws:
            await ws.send(encode_message(MessageType.LOGIN, {"username": "admin", "password": "admin", "silent": True}))
            for _ in range(3):
                await _recv(ws)
            self.assertEqual(self.server.service.emitter.subscriber_count, 1)

        for _ in range(50):
            if self.server.service.emitter.subscriber_count == 0 and self.server.session_count == 0:
                break
            await asyncio.sleep(0.02)
        self.assertEqual(self.server.service.emitter.subscriber_count, 0)
        self.assertEqual(self.server.session_count, 0)

    async def test_uptime_and_tps(self):
        for _ in range(3):
            self.server.record_tick()
        self.server.update_uptime()
        self.assertEqual(self.server.tree["server"]["game"]["tps"], 3)

        for _ in range(25):
            self.server.record_tick()
        self.server.update_uptime()
        self.assertEqual(self.server.tree["server"]["game"]["tps"], 20)
        self.assertGreaterEqual(self.server.tree["server"]["uptime"], 0)

    async def test_stop_resets_status(self):
        self.assertTrue(self.server.is_serving)
        await self.server.stop()
        self.assertFalse(self.server.is_serving)
        self.assertEqual(self.server.tree["status"], 0)



class TestPermissionsWatch(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "permissions.json")
        self._write([{"permission": "operator", "xuid": "1"}])
        config = dataclasses.replace(_test_config(), permissions_file=self.path, permissions_poll_interval=0.01)
        self.server = PanelServer(config, bridge=RecordingBridge(), reader=lambda: (1.0, 1.0))
        await self.server.start()

    async def asyncTearDown(self):
        await self.server.stop()
        self._tmp.cleanup()

    def _write(self, content, bump=False):
        modified = os.stat(self.path).st_mtime_ns if bump else None
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(content if isinstance(content, str) else json.dumps(content))
        if modified is not None:
            # Make the change visible even on file systems with coarse timestamps.
            os.utime(self.path, ns=(modified + 10**9, modified + 10**9))

    def _permissions(self):
        return self.server.tree["server"]["game"]["permissions"]

    async def test_loaded_on_start_and_reloaded_on_change(self):
        self.assertEqual(self._permissions(), [{"permission": "operator", "xuid": "1"}])

        self._write([{"permission": "member", "xuid": "1"}], bump=True)
        for _ in range(200):
            if self._permissions() != [{"permission": "operator", "xuid": "1"}]:
                break
            await asyncio.sleep(0.01)

        self.assertEqual(self._permissions(), [{"permission": "member", "xuid": "1"}])

    async def test_broken_file_keeps_the_last_good_permissions(self):
        with self.assertLogs("panelsync", level="WARNING") as cm:
            self._write("[{broken", bump=True)
            for _ in range(200):
                if any("Could not load permissions" in line for line in cm.output):
                    break
                await asyncio.sleep(0.01)

        self.assertTrue(any("Could not load permissions" in line for line in cm.output))
        self.assertEqual(self._permissions(), [{"permission": "operator", "xuid": "1"}])

class TestPanelServerInBackground(unittest.TestCase):

    def test_mutations_from_the_host_thread(self):
        server = PanelServer(_test_config(), reader=lambda: (1.0, 1.0))
        with self.assertRaises(CoreLoopNotRunningError):
            server.submit_mutation(lambda: None)

        server.start_in_background()
        try:
            done = threading.Event()
            loop_threads = []

            def set_version():
                loop_threads.append(threading.get_ident())
                server.tree["server"]["version"] = "2.0.0"
                done.set()

            server.submit_mutation(set_version)
            self.assertTrue(done.wait(timeout=5.0))
            self.assertTrue(server.is_serving)
            self.assertNotEqual(loop_threads, [threading.get_ident()])
        finally:
            server.stop_background()

        self.assertFalse(server.is_serving)
        self.assertEqual(server.tree["server"]["version"], "2.0.0")
        self.assertEqual(server.tree["status"], 0)


if __name__ == '__main__':
    unittest.main()
