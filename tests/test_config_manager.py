import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from calsync.config_manager import ConfigManager
from calsync.models import EVENT, ProviderConfig


class ConfigManagerTests(unittest.TestCase):
    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            providers = {
                "work": ProviderConfig.from_dict(
                    {"caldav_url": "https://dav.example.com", "resource_name": "tasks", "username": "u", "password": "p"}
                )
            }

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(providers)

            self.assertTrue(config_path.exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["providers"]["work"]["caldav_url"], "https://dav.example.com")
            self.assertEqual(data["providers"]["work"]["password"], "p")

    def test_update_merges_and_normalizes(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(Path(temp_dir) / "nested" / "config.yaml")
            manager.update(
                {
                    "providers": {
                        "cal": {
                            "caldav_url": "https://dav.example.com",
                            "resource_name": "Events",
                            "component_type": "event",
                            "auth_type": "bearer",
                            "bearer_token": "secret",
                        },
                        "": {"caldav_url": "ignored"},
                    }
                }
            )
            manager.update({"providers": {"cal": {"category_filter": "work"}}})

            cfg = manager.get_provider("cal")
            self.assertEqual(cfg.component_type, EVENT)
            self.assertEqual(cfg.category_filter, "work")
            self.assertEqual(cfg.bearer_token, "secret")
            self.assertEqual(list(manager.load()), ["cal"])
            self.assertEqual(manager.masked()["providers"]["cal"]["bearer_token"], "***")
            with self.assertRaises(KeyError):
                manager.get_provider("missing")


if __name__ == "__main__":
    unittest.main()
