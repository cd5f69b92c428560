import unittest

from panelsync.bridge import LoggingBridge, ServerBridge


class ChatOnlyBridge(ServerBridge):
    """Implements everything except the plugin actions."""

    async def execute_command(self, command):
        pass

    async def broadcast_chat(self, sender, message):
        pass

    async def kick_player(self, uuid, reason=None):
        return True

    async def change_setting(self, category, name, value, value_type=None):
        pass

    async def stop(self):
        pass

    async def restart(self):
        pass


class TestServerBridge(unittest.IsolatedAsyncioTestCase):

    def test_plugin_actions_must_be_implemented(self):
        with self.assertRaises(TypeError) as cm:
            ChatOnlyBridge()
        for name in ("install_plugin", "remove_plugin", "latest_plugin_version"):
            self.assertIn(name, str(cm.exception))

    async def test_logging_bridge_logs_and_reports_nothing_published(self):
        bridge = LoggingBridge()

        with self.assertLogs("panelsync", level="INFO") as cm:
            await bridge.install_plugin("backup", "1.0.0")
            await bridge.remove_plugin("backup")
            latest = await bridge.latest_plugin_version("backup")

        self.assertIsNone(latest)
        self.assertIsNone(await bridge.online_plugins())
        self.assertEqual(len(cm.records), 3)
        self.assertIn("install plugin backup@1.0.0", cm.output[0])


if __name__ == '__main__':
    unittest.main()
