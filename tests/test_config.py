import json
import os
import tempfile
import unittest
from unittest import mock

from panelsync.config import CONFIG_ENV_VAR, PanelConfig, config_from_dict, load_config
from panelsync.exceptions import ConfigError


class TestConfig(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        env = {k: v for k, v in os.environ.items() if k != CONFIG_ENV_VAR}
        patcher = mock.patch.dict(os.environ, env, clear=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _write(self, content: str) -> str:
        path = os.path.join(self._tmp.name, "panel.json")
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def test_defaults(self):
        config = load_config()
        self.assertEqual(config, PanelConfig())
        self.assertEqual(config.port, 8765)
        self.assertEqual(config.account.username, "admin")
        self.assertEqual(config.permissions_file, "permissions.json")

    def test_load_from_file(self):
        path = self._write(json.dumps({
            "port": 9000,
            "account": {"username": "op", "password": "secret"},
            "sample_interval": 5,
        }))

        config = load_config(path)

        self.assertEqual(config.port, 9000)
        self.assertEqual(config.account.password, "secret")
        self.assertEqual(config.sample_interval, 5.0)
        self.assertIsInstance(config.sample_interval, float)
        self.assertEqual(config.host, "0.0.0.0")

    def test_environment_variable_names_the_file(self):
        path = self._write('{"chat_name": "[Admin]"}')
        with mock.patch.dict(os.environ, {CONFIG_ENV_VAR: path}):
            self.assertEqual(load_config().chat_name, "[Admin]")

    def test_missing_file_falls_back_to_defaults(self):
        with self.assertLogs("panelsync", level="WARNING"):
            config = load_config(os.path.join(self._tmp.name, "absent.json"))
        self.assertEqual(config, PanelConfig())

    def test_invalid_json(self):
        path = self._write("{not json")
        with self.assertRaises(ConfigError) as cm:
            load_config(path)
        self.assertEqual(cm.exception.source, path)
        self.assertIn(path, str(cm.exception))

    def test_wrong_types(self):
        with self.assertRaises(ConfigError):
            config_from_dict({"port": "8765"})
        with self.assertRaises(ConfigError):
            config_from_dict({"capture_console": "yes"})
        with self.assertRaises(ConfigError):
            config_from_dict({"max_players": True})
        with self.assertRaises(ConfigError):
            config_from_dict({"account": "admin:admin"})
        with self.assertRaises(ConfigError):
            config_from_dict(["port", 1])

    def test_out_of_range_values(self):
        with self.assertRaises(ConfigError):
            config_from_dict({"port": 70000})
        with self.assertRaises(ConfigError):
            config_from_dict({"max_pending_messages": 0})

    def test_unknown_keys_are_ignored(self):
        with self.assertLogs("panelsync", level="WARNING") as cm:
            config = config_from_dict({"colour": "blue", "account": {"nickname": "x"}})
        self.assertEqual(config, PanelConfig())
        self.assertEqual(len(cm.records), 2)


if __name__ == '__main__':
    unittest.main()
