import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from socialhub.errors import ResourceError
from socialhub.platforms import resolve
from socialhub.sessions import SessionManager


def _seed(path: Path, name: str = "Cookies") -> None:
    path.mkdir(parents=True, exist_ok=True)
    (path / name).write_text("session-token", encoding="utf-8")


class SessionSwitchTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.opened = []
        self.manager = SessionManager(
            self.root,
            navigator=lambda platform, path: self.opened.append((platform.id, path)),
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_profiles_live_in_separate_directories(self) -> None:
        messenger = self.manager.data_dir_for(resolve("messenger"))
        instagram = self.manager.data_dir_for(resolve("instagram"))
        self.assertNotEqual(messenger, instagram)
        self.assertEqual(messenger, self.root / "sessions" / "messenger")

    def test_switch_wipes_outgoing_profile_before_navigation(self) -> None:
        messenger = resolve("messenger")
        instagram = resolve("instagram")
        self.manager.switch_to(messenger)
        _seed(self.manager.data_dir_for(messenger))

        seen_at_navigation = []
        self.manager.set_navigator(
            lambda platform, path: seen_at_navigation.append(
                list(self.manager.data_dir_for(messenger).iterdir())
            )
        )
        record = self.manager.switch_to(instagram)

        self.assertEqual(seen_at_navigation, [[]])
        self.assertEqual(record.platform_id, "instagram")
        self.assertTrue(record.cleared)
        self.assertEqual(self.manager.active.platform_id, "instagram")

    def test_round_trip_returns_to_empty_profile(self) -> None:
        messenger = resolve("messenger")
        self.manager.switch_to(messenger)
        _seed(self.manager.data_dir_for(messenger))
        self.manager.switch_to(resolve("x"))
        record = self.manager.switch_to(messenger)
        self.assertTrue(record.cleared)
        self.assertEqual(list(self.manager.data_dir_for(messenger).iterdir()), [])
        self.assertEqual([pid for pid, _ in self.opened], ["messenger", "x", "messenger"])

    def test_reselecting_active_platform_keeps_profile(self) -> None:
        messenger = resolve("messenger")
        self.manager.switch_to(messenger)
        _seed(self.manager.data_dir_for(messenger))
        record = self.manager.switch_to(messenger)
        self.assertFalse(record.cleared)
        self.assertTrue((self.manager.data_dir_for(messenger) / "Cookies").exists())

    def test_persistence_mode_keeps_outgoing_profile(self) -> None:
        manager = SessionManager(self.root, zero_persistence=False)
        messenger = resolve("messenger")
        manager.switch_to(messenger)
        _seed(manager.data_dir_for(messenger))
        manager.switch_to(resolve("facebook"))
        self.assertTrue((manager.data_dir_for(messenger) / "Cookies").exists())

    def test_wipe_failure_is_logged_and_switch_proceeds(self) -> None:
        messenger = resolve("messenger")
        self.manager.switch_to(messenger)
        _seed(self.manager.data_dir_for(messenger))
        with patch("socialhub.sessions.shutil.rmtree", side_effect=OSError("busy")):
            with self.assertLogs("socialhub.sessions", level="WARNING") as logs:
                record = self.manager.switch_to(resolve("instagram"))
        self.assertEqual(record.platform_id, "instagram")
        self.assertEqual(self.opened[-1][0], "instagram")
        self.assertTrue(any("wipe failed" in line for line in logs.output))
        audit = (self.root / "audit.log").read_text(encoding="utf-8")
        self.assertIn("session_wipe_failed platform=messenger", audit)

    def test_record_is_persisted_per_platform(self) -> None:
        self.manager.switch_to(resolve("x"))
        record = self.manager.record_for(resolve("x"))
        self.assertIsNotNone(record)
        self.assertEqual(record.storage_path, str(self.root / "sessions" / "x"))
        self.assertEqual([r.platform_id for r in self.manager.records()], ["x"])


class SessionClearTests(unittest.TestCase):
    def test_clear_session_on_empty_profile_is_a_no_op(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manager = SessionManager(Path(tmp))
            manager.clear_session(resolve("messenger"))
            self.assertFalse((Path(tmp) / "audit.log").exists())

    def test_clear_session_wraps_os_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manager = SessionManager(Path(tmp))
            _seed(manager.data_dir_for(resolve("messenger")))
            with patch("socialhub.sessions.shutil.rmtree", side_effect=OSError("denied")):
                with self.assertRaises(ResourceError):
                    manager.clear_session(resolve("messenger"))

    def test_clear_all_reports_failed_platforms(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manager = SessionManager(Path(tmp))
            _seed(manager.data_dir_for(resolve("x")))
            _seed(manager.data_dir_for(resolve("facebook")))
            real_rmtree = shutil.rmtree

            def flaky(path, *args, **kwargs):
                if Path(path).name == "x":
                    raise OSError("locked")
                return real_rmtree(path, *args, **kwargs)

            with patch("socialhub.sessions.shutil.rmtree", side_effect=flaky):
                with self.assertLogs("socialhub.sessions", level="WARNING"):
                    failed = manager.clear_all_sessions()
            self.assertEqual(failed, ["x"])
            self.assertEqual(list(manager.data_dir_for(resolve("facebook")).iterdir()), [])

    def test_shutdown_wipes_every_profile(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manager = SessionManager(Path(tmp))
            manager.switch_to(resolve("messenger"))
            _seed(manager.data_dir_for(resolve("messenger")))
            _seed(manager.data_dir_for(resolve("instagram")))
            manager.shutdown()
            self.assertIsNone(manager.active)
            for pid in ("messenger", "instagram"):
                self.assertEqual(list(manager.data_dir_for(resolve(pid)).iterdir()), [])


if __name__ == "__main__":
    unittest.main()
