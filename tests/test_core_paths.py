import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from core import paths as core_paths


class CorePathsTests(unittest.TestCase):
    def test_to_long_path_adds_prefix_for_deep_version_paths(self) -> None:
        sample = "E:\\Backups\\docs\\2024\\03\\01\\120000\\" + "folder\\" * 20 + "file.txt"
        with mock.patch.object(core_paths, "_IS_WINDOWS", True), mock.patch.object(
            core_paths, "_WINDOWS_MAX_PATH", 50
        ):
            transformed = core_paths.to_long_path(sample)
        self.assertTrue(transformed.startswith("\\\\?\\E:\\Backups"))
        self.assertTrue(transformed.endswith("file.txt"))

    def test_to_long_path_keeps_short_paths(self) -> None:
        with mock.patch.object(core_paths, "_IS_WINDOWS", True):
            self.assertEqual(core_paths.to_long_path("C:/data/a.txt"), "C:\\data\\a.txt")
            self.assertEqual(core_paths.to_long_path(r"\\server\share\a.txt"), r"\\server\share\a.txt")

    def test_to_long_path_unc(self) -> None:
        sample = r"\\server\share" + "\\nested" * 10 + "\\file.log"
        with mock.patch.object(core_paths, "_IS_WINDOWS", True), mock.patch.object(
            core_paths, "_WINDOWS_MAX_PATH", 40
        ):
            transformed = core_paths.to_long_path(sample)
        self.assertTrue(transformed.startswith("\\\\?\\UNC\\server\\share"))

    def test_to_long_path_is_noop_off_windows(self) -> None:
        with mock.patch.object(core_paths, "_IS_WINDOWS", False):
            self.assertEqual(core_paths.to_long_path("/srv/backups/a"), "/srv/backups/a")

    def test_is_unc_detects_long_unc(self) -> None:
        self.assertTrue(core_paths.is_unc(r"\\?\UNC\server\share\report.txt"))
        self.assertTrue(core_paths.is_unc(r"\\server\share"))
        self.assertFalse(core_paths.is_unc(r"\\?\C:\data"))
        self.assertFalse(core_paths.is_unc("C:/data"))

    def test_safe_label(self) -> None:
        self.assertEqual(core_paths.safe_label("docs"), "docs")
        self.assertEqual(core_paths.safe_label(" my docs/2024 "), "my_docs_2024")
        self.assertEqual(core_paths.safe_label("   "), "run")

    def test_working_dir_from_environment(self) -> None:
        with TemporaryDirectory() as tmp:
            home = Path(tmp) / "home"
            with mock.patch.dict("os.environ", {"WINBACKUP_HOME": str(home)}):
                resolved = core_paths.resolve_working_dir()
            self.assertEqual(resolved, home.resolve())
            self.assertTrue((resolved / "logs").is_dir())

    def test_runs_dir_layout(self) -> None:
        base = Path("work")
        self.assertEqual(core_paths.get_runs_dir(base), base / "exports" / "runs")
        self.assertEqual(core_paths.get_default_settings_paths(base)[0], base / "settings.json")


if __name__ == "__main__":
    unittest.main()
