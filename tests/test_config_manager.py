import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from calsync.config_manager import ConfigManager
from calsync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "config.yaml"
        self.manager = ConfigManager(str(self.config_path))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_creates_default_file(self) -> None:
        self.assertTrue(self.config_path.exists())
        config = self.manager.load()
        self.assertEqual(config.sync.unit_days, 7)
        self.assertEqual(config.sync.chunk_size_units, 16)
        self.assertEqual(config.sync.buffer_units, 4)
        self.assertEqual(config.deletion_policy.batch_size, 50)
        self.assertFalse(config.caldav.enabled)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        config = AppConfig.from_dict(
            {"caldav": {"server_url": "https://dav.example.com", "username": "u", "password": "p"}}
        )
        original_replace = Path.replace

        def replace_side_effect(self: Path, target: Path) -> Path:
            if str(self).endswith(".tmp"):
                raise OSError(errno.EBUSY, "Device or resource busy")
            return original_replace(self, target)

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            self.manager.save(config)

        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["caldav"]["server_url"], "https://dav.example.com")
        self.assertFalse(Path(str(self.config_path) + ".tmp").exists())

    def test_save_other_oserror_propagates(self) -> None:
        def replace_side_effect(self: Path, target: Path) -> Path:
            raise OSError(errno.EACCES, "Permission denied")

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            with self.assertRaises(OSError):
                self.manager.save(AppConfig())

    def test_update_deep_merges(self) -> None:
        self.manager.update({"sync": {"throttle_ms": 500}})
        config = self.manager.update({"sync": {"timezone": "Europe/Berlin"}})
        self.assertEqual(config.sync.throttle_ms, 500)
        self.assertEqual(config.sync.timezone, "Europe/Berlin")
        self.assertEqual(config.sync.unit_days, 7)

    def test_from_dict_clamps_values(self) -> None:
        config = self.manager.update(
            {
                "gateway": {"mode": "carrier-pigeon", "timeout_seconds": 0},
                "deletion_policy": {"warn_ratio": 3.5, "batch_size": 0},
            }
        )
        self.assertEqual(config.gateway.mode, "direct")
        self.assertEqual(config.gateway.timeout_seconds, 1)
        self.assertEqual(config.deletion_policy.warn_ratio, 1.0)
        self.assertEqual(config.deletion_policy.batch_size, 1)

    def test_masked_hides_secrets(self) -> None:
        self.manager.update({"caldav": {"password": "secret-pass"}, "cache": {"secret": "k"}})
        masked = self.manager.masked()
        self.assertEqual(masked["caldav"]["password"], "***")
        self.assertEqual(masked["cache"]["secret"], "***")
        self.assertEqual(masked["gateway"]["session_token"], "")

    def test_sanitize_keeps_stored_secret_for_mask_or_blank(self) -> None:
        self.manager.update({"caldav": {"password": "secret-pass"}})
        for value in ("***", "", "  "):
            payload = self.manager.sanitize_update({"caldav": {"password": value, "username": "u2"}})
            self.assertNotIn("password", payload["caldav"])
            self.assertEqual(payload["caldav"]["username"], "u2")

    def test_sanitize_drops_empty_section(self) -> None:
        self.manager.update({"caldav": {"password": "secret-pass"}})
        payload = self.manager.sanitize_update({"caldav": {"password": "***"}})
        self.assertNotIn("caldav", payload)

    def test_sanitize_accepts_new_secret(self) -> None:
        payload = self.manager.sanitize_update({"caldav": {"password": "new"}})
        self.assertEqual(payload["caldav"]["password"], "new")

    def test_record_last_sync(self) -> None:
        self.manager.record_last_sync("2026-03-01T10:00:00+00:00")
        self.assertEqual(self.manager.load().caldav.last_sync_at, "2026-03-01T10:00:00+00:00")


if __name__ == "__main__":
    unittest.main()
