import os
import tempfile
import unittest
from unittest import mock

from country_stats_config import PgConfig, config_file_path, load_config, parse_config
from country_stats_errors import ConfigError


VALID_CONFIG = """\
[pg]
database = "db4s"
num_connections = 3
port = 5432
password = "s3cret"
server = "db.example.org"
ssl = true
username = "stats"
"""


class TestConfigFilePath(unittest.TestCase):

    def test_environment_override(self):
        path = config_file_path({"CONFIG_FILE": "/etc/db4s/stats.toml"})
        self.assertEqual(path, "/etc/db4s/stats.toml")

    def test_default_location_under_home(self):
        with mock.patch("os.path.expanduser", return_value="/home/stats"):
            path = config_file_path({})
        self.assertEqual(
            path, "/home/stats/.db4s/db4s_country_stats_generator.toml")

    def test_empty_override_falls_back_to_home(self):
        with mock.patch("os.path.expanduser", return_value="/home/stats"):
            path = config_file_path({"CONFIG_FILE": ""})
        self.assertTrue(path.startswith("/home/stats/.db4s/"))

    def test_unknown_home_directory(self):
        with mock.patch("os.path.expanduser", return_value="~"):
            with self.assertRaises(ConfigError):
                config_file_path({})


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def write(self, text):
        path = os.path.join(self.tmpdir.name, "config.toml")
        with open(path, "w") as f:
            f.write(text)
        return path

    def test_valid_file(self):
        config = load_config(self.write(VALID_CONFIG))
        self.assertEqual(config, PgConfig(
            server="db.example.org",
            port=5432,
            username="stats",
            password="s3cret",
            database="db4s",
            ssl=True,
            num_connections=3,
            debug=True,
        ))

    def test_debug_can_be_switched_off(self):
        config = load_config(self.write("debug = false\n" + VALID_CONFIG))
        self.assertFalse(config.debug)

    def test_config_from_environment(self):
        path = self.write(VALID_CONFIG)
        with mock.patch.dict(os.environ, {"CONFIG_FILE": path}):
            config = load_config()
        self.assertEqual(config.server, "db.example.org")

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            load_config(os.path.join(self.tmpdir.name, "nope.toml"))

    def test_malformed_file(self):
        with self.assertRaises(ConfigError):
            load_config(self.write("[pg\nserver = "))

    def test_missing_section(self):
        with self.assertRaises(ConfigError):
            load_config(self.write('[postgres]\nserver = "x"\n'))

    def test_missing_key(self):
        text = VALID_CONFIG.replace('password = "s3cret"\n', "")
        with self.assertRaisesRegex(ConfigError, "password"):
            load_config(self.write(text))

    def test_wrong_type(self):
        text = VALID_CONFIG.replace("port = 5432", 'port = "5432"')
        with self.assertRaisesRegex(ConfigError, "port"):
            load_config(self.write(text))

    def test_boolean_is_not_a_number(self):
        text = VALID_CONFIG.replace("num_connections = 3", "num_connections = true")
        with self.assertRaises(ConfigError):
            load_config(self.write(text))

    def test_ssl_must_be_boolean(self):
        text = VALID_CONFIG.replace("ssl = true", 'ssl = "yes"')
        with self.assertRaises(ConfigError):
            load_config(self.write(text))

    def test_needs_at_least_one_connection(self):
        data = {"pg": {
            "database": "db4s", "num_connections": 0, "port": 5432,
            "password": "", "server": "localhost", "ssl": False,
            "username": "stats",
        }}
        with self.assertRaises(ConfigError):
            parse_config(data)


if __name__ == '__main__':
    unittest.main()
