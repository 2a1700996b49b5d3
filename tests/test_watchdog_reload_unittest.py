import asyncio
import os
import tempfile
import unittest
from pathlib import Path

from medvoy_relay.config_reload import ConfigReloadWatcher, is_watched_config


class WatchedConfigPathTests(unittest.TestCase):
    def test_matches_same_filename_for_absolute_path(self) -> None:
        self.assertTrue(is_watched_config("/etc/medvoy/config.yaml", "config.yaml"))

    def test_matches_bytes_path(self) -> None:
        self.assertTrue(is_watched_config(b"/etc/medvoy/config.yaml", "config.yaml"))

    def test_does_not_match_editor_swap_file(self) -> None:
        self.assertFalse(is_watched_config("/etc/medvoy/.config.yaml.swp", "config.yaml"))

    def test_does_not_match_none(self) -> None:
        self.assertFalse(is_watched_config(None, "config.yaml"))


class ReloadIfChangedTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.config_file = Path(self._tmp.name) / "config.yaml"
        self.config_file.write_text("upstream_model: a\n", encoding="utf-8")
        self.reloaded: list[Path] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def _record(self, path: Path) -> None:
        self.reloaded.append(path)

    def _watcher(self) -> ConfigReloadWatcher:
        return ConfigReloadWatcher(config_file=self.config_file, on_reload=self._record)

    def test_unchanged_file_is_not_reloaded(self) -> None:
        self.assertFalse(asyncio.run(self._watcher().reload_if_changed()))
        self.assertEqual(self.reloaded, [])

    def test_changed_mtime_triggers_reload_once(self) -> None:
        watcher = self._watcher()
        stat = self.config_file.stat()
        os.utime(self.config_file, (stat.st_atime, stat.st_mtime + 5))

        self.assertTrue(asyncio.run(watcher.reload_if_changed()))
        self.assertFalse(asyncio.run(watcher.reload_if_changed()))
        self.assertEqual(self.reloaded, [self.config_file])

    def test_deleted_file_keeps_current_config(self) -> None:
        watcher = self._watcher()
        self.config_file.unlink()

        self.assertFalse(asyncio.run(watcher.reload_if_changed(force=True)))
        self.assertEqual(self.reloaded, [])

    def test_failed_reload_keeps_old_mtime(self) -> None:
        async def _broken(_path: Path) -> None:
            raise ValueError("bad yaml")

        watcher = ConfigReloadWatcher(config_file=self.config_file, on_reload=_broken)
        stat = self.config_file.stat()
        os.utime(self.config_file, (stat.st_atime, stat.st_mtime + 5))

        with self.assertRaises(ValueError):
            asyncio.run(watcher.reload_if_changed())
        watcher._on_reload = self._record
        self.assertTrue(asyncio.run(watcher.reload_if_changed()))


if __name__ == "__main__":
    unittest.main()
