"""Per-platform session storage: isolation, purge-on-switch and purge-on-quit."""

from __future__ import annotations

import logging
import shutil
from dataclasses import asdict, dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from socialhub.errors import ResourceError
from socialhub.platforms import PlatformDescriptor, list_platforms, resolve
from socialhub.storage import append_log, read_json, utc_now, write_json

logger = logging.getLogger(__name__)

Navigator = Callable[[PlatformDescriptor, Path], None]


@dataclass
class SessionRecord:
    platform_id: str
    storage_path: str
    last_active_at: str
    cleared: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SessionManager:
    """Owns the active SessionRecord; switch_to is the single writer."""

    def __init__(
        self,
        data_root: Path,
        *,
        zero_persistence: bool = True,
        navigator: Navigator | None = None,
        audit_log: Path | None = None,
    ) -> None:
        self._data_root = Path(data_root)
        self._sessions_dir = self._data_root / "sessions"
        self._zero_persistence = zero_persistence
        self._navigator = navigator
        self._audit_log = audit_log or self._data_root / "audit.log"
        self._switch_lock = Lock()
        self._active: SessionRecord | None = None

    @property
    def active(self) -> SessionRecord | None:
        return self._active

    @property
    def zero_persistence(self) -> bool:
        return self._zero_persistence

    def set_navigator(self, navigator: Navigator | None) -> None:
        self._navigator = navigator

    def data_dir_for(self, platform: PlatformDescriptor) -> Path:
        return self._sessions_dir / platform.storage_key

    def clear_session(self, platform: PlatformDescriptor) -> None:
        target = self.data_dir_for(platform)
        if not _has_content(target):
            return
        try:
            shutil.rmtree(target)
            target.mkdir(parents=True, exist_ok=True)
            record = self.record_for(platform)
            if record is not None:
                record.cleared = True
                self._save_record(record)
        except OSError as exc:
            raise ResourceError(f"clear_session({platform.id}): {exc}") from exc
        logger.info("cleared session storage for %s", platform.id)
        append_log(self._audit_log, f"session_cleared platform={platform.id}")

    def clear_all_sessions(self) -> list[str]:
        """Wipe every platform; returns the ids whose wipe failed."""
        failed: list[str] = []
        for platform in list_platforms():
            if not self._wipe_best_effort(platform):
                failed.append(platform.id)
        return failed

    def switch_to(self, platform: PlatformDescriptor) -> SessionRecord:
        with self._switch_lock:
            target = self.data_dir_for(platform)
            outgoing = self._active
            if (
                outgoing is not None
                and outgoing.platform_id != platform.id
                and self._zero_persistence
            ):
                self._wipe_best_effort(resolve(outgoing.platform_id))

            # cleared reflects the profile state at activation, before navigation.
            record = SessionRecord(
                platform_id=platform.id,
                storage_path=str(target),
                last_active_at=utc_now(),
                cleared=not _has_content(target),
            )
            try:
                target.mkdir(parents=True, exist_ok=True)
                self._save_record(record)
            except OSError as exc:
                logger.warning("could not record session for %s: %s", platform.id, exc)
                append_log(self._audit_log, f"session_record_failed platform={platform.id} error={exc}")
            self._active = record
            logger.info("active platform is now %s", platform.id)

            if self._navigator is not None:
                self._navigator(platform, target)
            return record

    def shutdown(self) -> None:
        with self._switch_lock:
            if self._zero_persistence:
                self.clear_all_sessions()
            self._active = None

    def record_for(self, platform: PlatformDescriptor) -> SessionRecord | None:
        payload = read_json(self._record_path(platform))
        if not payload:
            return None
        try:
            return SessionRecord(
                platform_id=str(payload["platform_id"]),
                storage_path=str(payload["storage_path"]),
                last_active_at=str(payload.get("last_active_at", "")),
                cleared=bool(payload.get("cleared", False)),
            )
        except KeyError:
            return None

    def records(self) -> list[SessionRecord]:
        found: list[SessionRecord] = []
        for platform in list_platforms():
            record = self.record_for(platform)
            if record is not None:
                found.append(record)
        return found

    def _wipe_best_effort(self, platform: PlatformDescriptor) -> bool:
        try:
            self.clear_session(platform)
        except ResourceError as exc:
            logger.warning("session wipe failed, continuing: %s", exc)
            append_log(self._audit_log, f"session_wipe_failed platform={platform.id} error={exc}")
            return False
        return True

    def _record_path(self, platform: PlatformDescriptor) -> Path:
        return self._sessions_dir / f"{platform.id}.json"

    def _save_record(self, record: SessionRecord) -> None:
        write_json(self._sessions_dir / f"{record.platform_id}.json", record.to_dict())


def _has_content(path: Path) -> bool:
    try:
        return path.is_dir() and any(path.iterdir())
    except OSError:
        return True
