import tempfile
import threading
import unittest
from pathlib import Path

from socialhub.config import AppConfig
from socialhub.observers import THEMES
from socialhub.orchestrator import (
    OPEN_RETRY_BASE_S,
    OPEN_RETRY_MAX_S,
    Orchestrator,
    _parse_dnd_setting,
)
from socialhub.page_scripts import APPLY_PRIVACY_STYLES_JS, SET_THEME_JS
from socialhub.platforms import resolve
from socialhub.privacy import GUARD_MARKER


class _FakeContext:
    def __init__(self):
        self.routes = []

    def route(self, pattern, handler) -> None:
        self.routes.append((pattern, handler))

    def on(self, event, callback) -> None:
        return None


class _FakePage:
    def __init__(self):
        self.scripts = []

    def evaluate(self, script, args=None):
        self.scripts.append((script, args))
        return None


class _FakeView:
    """Stands in for EmbeddedView; records what the orchestrator asks of it."""

    def __init__(self, sessions_root: Path):
        self.sessions_root = sessions_root
        self.platform = None
        self.context = None
        self.page = None
        self.opened = []
        self.visited = []
        self.events = []
        self.closed = 0
        self.fail_open = False

    def is_open(self) -> bool:
        return self.context is not None

    def open(self, platform, user_data_dir):
        if self.fail_open:
            raise RuntimeError("browser executable not found")
        leftovers = sorted(
            str(p.relative_to(self.sessions_root))
            for p in self.sessions_root.glob("*/*")
        )
        self.opened.append((platform.id, leftovers))
        self.platform = platform
        self.context = _FakeContext()
        self.page = _FakePage()
        return self.context, self.page

    def navigate(self, url: str) -> None:
        self.visited.append(url)

    def emit(self, name, payload) -> int:
        self.events.append((name, payload))
        return 1

    def close(self) -> None:
        self.closed += 1
        self.platform = None
        self.context = None
        self.page = None


class _RecordingBackend:
    name = "recording"

    def __init__(self):
        self.shown = []
        self.presented = []

    def present(self, title, body, icon="", sound=False):
        self.shown.append(title)
        self.presented.append((title, body, sound))
        return True


def _invoke(name, payload=None, msg_id="1"):
    return {"kind": "command", "name": name, "payload": payload or {}, "id": msg_id}


class OrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        config = AppConfig(
            data_root=self.root,
            zero_persistence=True,
            headless=True,
            log_level="INFO",
            workers=1,
            loop_interval_ms=50,
        )
        self.backend = _RecordingBackend()
        self.now = 100.0
        self.orch = Orchestrator(config, backend=self.backend, clock=lambda: self.now)
        self.view = _FakeView(self.root / "sessions")
        self.orch.attach_view(self.view)

    def tearDown(self) -> None:
        self.orch.shutdown()
        self._tmp.cleanup()

    def _settle(self) -> None:
        self.assertTrue(self.orch.commands.join(timeout=5))
        self.orch.process_pending()

    def _select(self, platform_id: str) -> dict:
        reply = self.orch.handle_command(_invoke("select_platform", {"platform_id": platform_id}))
        self.orch.process_pending()
        return reply

    def test_every_command_has_a_handler(self) -> None:
        self.assertEqual(self.orch.commands.missing_handlers(), [])

    def test_select_platform_opens_isolated_profile(self) -> None:
        reply = self._select("messenger")
        self.assertEqual(reply, {"ok": True, "value": "Selected platform: Messenger", "id": "1"})
        self.assertEqual(self.view.opened[0][0], "messenger")
        self.assertEqual(self.view.visited, ["https://www.messenger.com"])
        self.assertEqual(len(self.view.context.routes), 1)
        self.assertIsNotNone(getattr(self.view.context, GUARD_MARKER))
        self.assertEqual(self.orch.settings.get("last_platform"), "messenger")
        self.assertEqual(self.orch.sessions.active.platform_id, "messenger")

    def test_switch_purges_previous_profile_before_opening_next(self) -> None:
        self._select("messenger")
        cookie = self.root / "sessions" / "messenger" / "Cookies"
        cookie.write_text("secret", encoding="utf-8")
        self._select("instagram")
        self.assertEqual(self.view.closed, 1)
        self.assertEqual(self.view.opened[-1], ("instagram", []))
        self.assertFalse(cookie.exists())

    def test_reselecting_same_platform_only_navigates(self) -> None:
        self._select("x")
        self._select("x")
        self.assertEqual(len(self.view.opened), 1)
        self.assertEqual(self.view.visited, ["https://x.com/messages"] * 2)
        self.assertEqual(self.view.closed, 0)

    def test_unknown_platform_is_rejected(self) -> None:
        reply = self._select("myspace")
        self.assertEqual(reply["ok"], False)
        self.assertEqual(reply["error"], "Unknown platform: myspace")
        self.assertEqual(self.view.opened, [])

    def test_set_privacy_persists_and_reaches_page(self) -> None:
        self._select("messenger")
        payload = {
            "block_typing": False,
            "block_read_receipts": True,
            "hide_last_active": False,
            "block_link_previews": True,
        }
        reply = self.orch.handle_command(_invoke("set_privacy", payload))
        self.assertEqual(reply, {"ok": True, "value": "queued", "id": "1"})
        self._settle()
        self.assertEqual(self.orch.privacy.config.version, 1)
        self.assertFalse(self.orch.privacy.config.block_typing)
        self.assertEqual(self.orch.settings.get("privacy")["version"], 1)
        self.assertIn(("update-privacy", dict(payload, version=1)), self.view.events)
        style_calls = [args for script, args in self.view.page.scripts if script == APPLY_PRIVACY_STYLES_JS]
        features = [rule["feature"] for rule in style_calls[-1][1]]
        self.assertEqual(features, ["block_read_receipts", "block_link_previews"])

    def test_privacy_versions_keep_increasing(self) -> None:
        payload = {
            "block_typing": True,
            "block_read_receipts": True,
            "hide_last_active": True,
            "block_link_previews": False,
        }
        first = self.orch.handle_command(_invoke("set_privacy", payload, msg_id="a"))
        second = self.orch.handle_command(_invoke("set_privacy", payload, msg_id="b"))
        self.assertTrue(first["ok"] and second["ok"])
        self._settle()
        self.assertEqual(self.orch.privacy.config.version, 2)
        self.assertEqual(self.orch.settings.get("privacy")["version"], 2)

    def test_save_theme_applies_on_page(self) -> None:
        self._select("messenger")
        reply = self.orch.handle_command(_invoke("save_setting", {"key": "theme", "value": "dark"}))
        self.assertTrue(reply["ok"])
        self._settle()
        self.assertEqual(self.orch.theme.current, "dark")
        self.assertIn((SET_THEME_JS, ["socialhub-theme", THEMES["dark"]]), self.view.page.scripts)
        self.assertEqual(self.orch.settings.get("theme"), "dark")

    def test_save_unknown_theme_is_rejected(self) -> None:
        reply = self.orch.handle_command(_invoke("save_setting", {"key": "theme", "value": "neon"}))
        self.assertEqual(reply["error"], "Unknown theme: neon")
        self.assertIsNone(self.orch.settings.get("theme"))

    def test_reserved_and_mistyped_settings_are_rejected(self) -> None:
        reserved = self.orch.handle_command(_invoke("save_setting", {"key": "privacy", "value": {}}))
        mistyped = self.orch.handle_command(
            _invoke("save_setting", {"key": "notifications_enabled", "value": "yes"})
        )
        self.assertFalse(reserved["ok"])
        self.assertFalse(mistyped["ok"])

    def test_mute_shortcut_toggles_notifications(self) -> None:
        self._select("messenger")
        reply = self.orch.handle_command(_invoke("handle_shortcut", {"action": "mute"}))
        self.assertEqual(reply["value"], {"action": "mute", "notifications_enabled": False})
        self.assertFalse(self.orch.notifications.enabled)
        self.assertIn(("toggle-notifications", False), self.view.events)
        self.orch.handle_command(_invoke("show_notification", {"title": "Ana"}))
        self._settle()
        self.assertEqual(self.backend.shown, [])
        self.assertEqual(self.orch.notifications.suppressed, 1)

    def test_shortcut_validation(self) -> None:
        unknown = self.orch.handle_command(_invoke("handle_shortcut", {"action": "self-destruct"}))
        out_of_range = self.orch.handle_command(
            _invoke("handle_shortcut", {"action": "switch-conversation", "data": {"index": 10}})
        )
        ok = self.orch.handle_command(_invoke("handle_shortcut", {"action": "switch-conversation", "index": 3}))
        self.assertFalse(unknown["ok"])
        self.assertFalse(out_of_range["ok"])
        self.assertEqual(ok["value"], {"action": "switch-conversation", "index": 3})

    def test_show_notification_reaches_backend(self) -> None:
        reply = self.orch.handle_command(_invoke("show_notification", {"title": "Ana", "body": "hi"}))
        self.assertEqual(reply["value"], "queued")
        self._settle()
        self.assertEqual(self.backend.presented, [("Ana", "hi", False)])

    def test_slow_notification_does_not_hold_the_loop(self) -> None:
        release = threading.Event()
        original = self.backend.present

        def slow_present(title, body, icon="", sound=False):
            release.wait(5)
            return original(title, body, icon, sound)

        self.backend.present = slow_present
        try:
            reply = self.orch.handle_command(_invoke("show_notification", {"title": "Ana"}))
            self.assertTrue(reply["ok"])
            self.assertEqual(self.backend.shown, [])
            self._select("x")
            self.assertEqual(self.view.opened[0][0], "x")
        finally:
            release.set()
        self._settle()
        self.assertEqual(self.backend.shown, ["Ana"])

    def test_preview_and_sound_settings(self) -> None:
        for key, value in (("show_preview", False), ("sound_enabled", True)):
            reply = self.orch.handle_command(_invoke("save_setting", {"key": key, "value": value}))
            self.assertTrue(reply["ok"])
        self._settle()
        self.orch.handle_command(_invoke("show_notification", {"title": "Ana", "body": "secret plans"}))
        self._settle()
        self.assertEqual(self.backend.presented, [("Ana", "", True)])
        self.assertFalse(self.orch.settings.get("show_preview"))
        self.assertTrue(self.orch.settings.get("sound_enabled"))
        mistyped = self.orch.handle_command(_invoke("save_setting", {"key": "sound_enabled", "value": 1}))
        self.assertFalse(mistyped["ok"])

    def test_custom_css_becomes_active_theme(self) -> None:
        self._select("messenger")
        css = "body{background:#101010!important}"
        reply = self.orch.handle_command(_invoke("save_setting", {"key": "custom_css", "value": css}))
        self.assertTrue(reply["ok"])
        self._settle()
        self.assertEqual(self.orch.theme.current, "custom")
        self.assertIn((SET_THEME_JS, ["socialhub-theme", css]), self.view.page.scripts)
        self.assertEqual(self.orch.settings.get("custom_css"), css)
        self.assertEqual(self.orch.settings.get("theme"), "custom")
        self.assertIn(("set-theme", "custom"), self.view.events)
        rejected = self.orch.handle_command(_invoke("save_setting", {"key": "custom_css", "value": 42}))
        self.assertFalse(rejected["ok"])

    def test_custom_theme_is_restored_at_startup(self) -> None:
        self.orch.settings.set("custom_css", "body{color:red}")
        self.orch.settings.set("theme", "custom")
        restored = Orchestrator(self.orch.config, settings=self.orch.settings, backend=self.backend)
        try:
            self.assertEqual(restored.theme.current, "custom")
            self.assertEqual(restored.theme.custom_css, "body{color:red}")
        finally:
            restored.shutdown()

    def test_open_failure_is_logged_and_retried(self) -> None:
        self.view.fail_open = True
        with self.assertLogs("socialhub.orchestrator", level="ERROR") as logs:
            self._select("messenger")
        self.assertIn("could not open messenger", logs.output[0])
        self.assertFalse(self.view.is_open())
        self.assertEqual(self.view.closed, 1)
        audit = self.orch.config.audit_log.read_text(encoding="utf-8")
        self.assertIn("platform_open_failed platform=messenger", audit)

        self.view.fail_open = False
        self.orch.process_pending()
        self.assertEqual(self.view.opened, [])
        self.now += OPEN_RETRY_BASE_S
        self.orch.process_pending()
        self.assertEqual(self.view.opened[0][0], "messenger")
        self.assertEqual(self.view.visited, ["https://www.messenger.com"])
        self.assertEqual(self.orch.settings.get("last_platform"), "messenger")

    def test_repeated_open_failures_back_off(self) -> None:
        self.view.fail_open = True
        with self.assertLogs("socialhub.orchestrator", level="ERROR"):
            self._select("messenger")
            for _ in range(8):
                self.now += OPEN_RETRY_MAX_S
                self.orch.process_pending()
        self.assertEqual(self.orch._open_failures, 9)
        _platform, due = self.orch._retry
        self.assertEqual(due - self.now, OPEN_RETRY_MAX_S)

    def test_title_changes_forward_deduplicated_counts(self) -> None:
        for title in ("(5) Messenger", "(5) Messenger", "Messenger", "Messenger · 6"):
            self.orch.on_title(title)
        with self.assertLogs("socialhub.orchestrator", level="INFO") as logs:
            self.orch.process_pending()
        self.assertEqual(self.orch.unread_count, 6)
        self.assertEqual(len([line for line in logs.output if "unread count" in line]), 2)

    def test_navigate_event_reaches_page(self) -> None:
        self.orch.navigate("/t/42")
        self.assertIn(("navigate", "#/t/42"), self.view.events)

    def test_page_ready_pushes_current_state(self) -> None:
        self._select("messenger")
        self.view.events.clear()
        self.orch._on_page_ready(self.view.page)
        self.assertEqual(self.view.events, [("toggle-notifications", True)])
        self.assertEqual(self.view.page.scripts[-1][0], APPLY_PRIVACY_STYLES_JS)

    def test_shutdown_closes_view_and_wipes_profiles(self) -> None:
        self._select("messenger")
        cookie = self.root / "sessions" / "messenger" / "Cookies"
        cookie.write_text("secret", encoding="utf-8")
        self.orch.shutdown()
        self.assertFalse(cookie.exists())
        self.assertIsNone(self.orch.sessions.active)
        self.assertFalse(self.view.is_open())


class DndSettingTests(unittest.TestCase):
    def test_parse(self) -> None:
        self.assertEqual(_parse_dnd_setting("22:00-07:00"), ("22:00", "07:00"))
        self.assertIsNone(_parse_dnd_setting(None))
        with self.assertLogs("socialhub.orchestrator", level="WARNING"):
            self.assertIsNone(_parse_dnd_setting("late-early"))


if __name__ == "__main__":
    unittest.main()
