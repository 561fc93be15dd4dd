#!/usr/bin/env python3
"""
Unit tests for settings loading and logging setup
"""

import logging
import os
import tempfile
import unittest

from parking_garage.config import Settings, setup_logging


class TestSettings(unittest.TestCase):
    """Defaults, YAML file and environment overrides"""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def write_config(self, text):
        path = os.path.join(self.tmpdir.name, "config.yaml")
        with open(path, "w") as f:
            f.write(text)
        return path

    def test_defaults(self):
        settings = Settings()
        self.assertEqual(settings.DATABASE_URL, "sqlite:///./parking_garage.db")
        self.assertEqual(settings.LOCK_BACKEND, "memory")
        self.assertIsNone(settings.MONGO_URL)
        self.assertEqual(settings.RECENT_HISTORY_LIMIT, 10)

    def test_yaml_file(self):
        path = self.write_config(
            "database:\n"
            "  url: sqlite://\n"
            "locking:\n"
            "  backend: Redis\n"
            "  timeout_seconds: 3\n"
            "logging:\n"
            "  level: debug\n"
        )
        settings = Settings.load(path, environ={})
        self.assertEqual(settings.DATABASE_URL, "sqlite://")
        self.assertEqual(settings.LOCK_BACKEND, "redis")
        self.assertEqual(settings.LOCK_TIMEOUT_SECONDS, 3.0)
        self.assertEqual(settings.LOG_LEVEL, "DEBUG")
        # untouched keys keep their defaults
        self.assertEqual(settings.LOCK_BLOCKING_TIMEOUT_SECONDS, 5.0)

    def test_path_from_environment(self):
        path = self.write_config("queries:\n  recent_history_limit: 4\n")
        settings = Settings.load(environ={"PARKING_GARAGE_CONFIG": path})
        self.assertEqual(settings.RECENT_HISTORY_LIMIT, 4)

    def test_environment_wins_over_file(self):
        path = self.write_config("database:\n  url: sqlite:///file.db\n")
        settings = Settings.load(path, environ={
            "DATABASE_URL": "sqlite:///env.db",
            "LOCK_TIMEOUT_SECONDS": "2.5",
            "RECENT_HISTORY_LIMIT": "7",
            "MONGO_URL": "",
        })
        self.assertEqual(settings.DATABASE_URL, "sqlite:///env.db")
        self.assertEqual(settings.LOCK_TIMEOUT_SECONDS, 2.5)
        self.assertEqual(settings.RECENT_HISTORY_LIMIT, 7)
        self.assertIsNone(settings.MONGO_URL)

    def test_invalid_backend(self):
        with self.assertRaises(ValueError):
            Settings({"locking": {"backend": "zookeeper"}})

    def test_invalid_files(self):
        with self.assertRaises(ValueError):
            Settings.load(self.write_config("database: [unclosed\n"), environ={})
        with self.assertRaises(ValueError):
            Settings.load(self.write_config("- just\n- a list\n"), environ={})

    def test_repr_hides_credentials(self):
        settings = Settings({"database": {"url": "postgresql://parking:secret@db/parking"}})
        self.assertNotIn("secret", repr(settings))


class TestSetupLogging(unittest.TestCase):

    def setUp(self):
        root = logging.getLogger()
        saved = (root.level, list(root.handlers))

        def restore():
            for handler in root.handlers:
                if handler not in saved[1]:
                    handler.close()
            root.handlers[:] = saved[1]
            root.setLevel(saved[0])

        self.addCleanup(restore)

    def test_file_handler(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = os.path.join(tmpdir, "logs", "garage.log")
            logger = setup_logging(Settings({"logging": {"level": "warning", "file": log_file}}))

            self.assertEqual(logger.name, "parking_garage")
            self.assertEqual(logging.getLogger().level, logging.WARNING)
            logger.warning("spot S1 audit")
            for handler in logging.getLogger().handlers:
                handler.flush()

            with open(log_file) as f:
                self.assertIn("parking_garage - WARNING - spot S1 audit", f.read())

            for handler in logging.getLogger().handlers:
                handler.close()


if __name__ == '__main__':
    unittest.main()
