"""Bridge protocol: closed command/event variants, command dispatch and event multicast.

Commands travel from the embedded page to the native host and get exactly one
reply. Events are fire-and-forget and reach every listener registered at the
time of emission.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, Future
from dataclasses import asdict, dataclass, field
from threading import Condition, Lock
from typing import Any, Callable, ClassVar, Union

from socialhub.errors import ProtocolError, SocialHubError

logger = logging.getLogger(__name__)

COMMAND = "command"
EVENT = "event"


@dataclass(frozen=True)
class BridgeMessage:
    kind: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "BridgeMessage":
        if not isinstance(raw, dict):
            raise ProtocolError("bridge message must be an object")
        kind = raw.get("kind", COMMAND)
        if kind not in (COMMAND, EVENT):
            raise ProtocolError(f"unknown message kind: {kind!r}")
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ProtocolError("bridge message needs a name")
        payload = raw.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ProtocolError(f"payload of {name} must be an object")
        correlation_id = raw.get("id", raw.get("correlation_id"))
        return cls(
            kind=kind,
            name=name.strip(),
            payload=payload,
            correlation_id=None if correlation_id is None else str(correlation_id),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# Commands (page -> native)


@dataclass(frozen=True)
class SelectPlatform:
    NAME: ClassVar[str] = "select_platform"
    platform_id: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SelectPlatform":
        # Settings panels send platformName.
        raw = payload.get("platform_id", payload.get("platformName"))
        return cls(platform_id=_expect_str(raw, "platform_id"))


@dataclass(frozen=True)
class ShowNotification:
    NAME: ClassVar[str] = "show_notification"
    title: str
    body: str = ""
    icon: str = ""
    tag: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ShowNotification":
        return cls(
            title=_expect_str(payload.get("title"), "title"),
            body=_optional_str(payload.get("body"), "body"),
            icon=_optional_str(payload.get("icon"), "icon"),
            tag=_optional_str(payload.get("tag"), "tag"),
        )


@dataclass(frozen=True)
class UpdateUnreadCount:
    NAME: ClassVar[str] = "update_unread_count"
    count: int

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "UpdateUnreadCount":
        count = payload.get("count")
        if isinstance(count, bool) or not isinstance(count, int):
            raise ProtocolError("'count' must be an integer")
        if count < 0:
            raise ProtocolError("'count' must not be negative")
        return cls(count=count)


@dataclass(frozen=True)
class HandleShortcut:
    NAME: ClassVar[str] = "handle_shortcut"
    action: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "HandleShortcut":
        action = _expect_str(payload.get("action"), "action")
        data = payload.get("data")
        if data is None:
            # Page scripts spread extra fields next to the action.
            data = {key: value for key, value in payload.items() if key != "action"}
        if not isinstance(data, dict):
            raise ProtocolError("'data' must be an object")
        return cls(action=action, data=data)


@dataclass(frozen=True)
class SaveSetting:
    NAME: ClassVar[str] = "save_setting"
    key: str
    value: Any

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SaveSetting":
        if "value" not in payload:
            raise ProtocolError("'value' is required")
        return cls(key=_expect_str(payload.get("key"), "key"), value=payload["value"])


@dataclass(frozen=True)
class SetPrivacy:
    NAME: ClassVar[str] = "set_privacy"
    block_typing: bool
    block_read_receipts: bool
    hide_last_active: bool
    block_link_previews: bool

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SetPrivacy":
        return cls(
            block_typing=_expect_bool(payload, "block_typing"),
            block_read_receipts=_expect_bool(payload, "block_read_receipts"),
            hide_last_active=_expect_bool(payload, "hide_last_active"),
            block_link_previews=_expect_bool(payload, "block_link_previews"),
        )


Command = Union[
    SelectPlatform,
    ShowNotification,
    UpdateUnreadCount,
    HandleShortcut,
    SaveSetting,
    SetPrivacy,
]

COMMAND_TYPES: tuple[type, ...] = (
    SelectPlatform,
    ShowNotification,
    UpdateUnreadCount,
    HandleShortcut,
    SaveSetting,
    SetPrivacy,
)
_COMMANDS_BY_NAME: dict[str, type] = {cls.NAME: cls for cls in COMMAND_TYPES}


# Events (native -> page)


@dataclass(frozen=True)
class SetTheme:
    NAME: ClassVar[str] = "set-theme"
    name: str

    def payload(self) -> Any:
        return self.name


@dataclass(frozen=True)
class UpdatePrivacy:
    NAME: ClassVar[str] = "update-privacy"
    config: Any

    def payload(self) -> Any:
        return self.config.to_dict()


@dataclass(frozen=True)
class ToggleNotifications:
    NAME: ClassVar[str] = "toggle-notifications"
    enabled: bool

    def payload(self) -> Any:
        return bool(self.enabled)


@dataclass(frozen=True)
class Navigate:
    NAME: ClassVar[str] = "navigate"
    route_hash: str

    def payload(self) -> Any:
        return self.route_hash


Event = Union[SetTheme, UpdatePrivacy, ToggleNotifications, Navigate]


def parse_command(message: BridgeMessage) -> Command:
    if message.kind != COMMAND:
        raise ProtocolError(f"{message.name} is not a command")
    command_cls = _COMMANDS_BY_NAME.get(message.name)
    if command_cls is None:
        raise ProtocolError(f"unknown command: {message.name}")
    return command_cls.from_payload(message.payload)


@dataclass(frozen=True)
class Reply:
    ok: bool
    value: Any = None
    error: str = ""
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": self.ok}
        if self.ok:
            payload["value"] = self.value
        else:
            payload["error"] = self.error
        if self.correlation_id is not None:
            payload["id"] = self.correlation_id
        return payload


QUEUED = "queued"


@dataclass(frozen=True)
class _Handler:
    fn: Callable[[Any], Any]
    offload: bool
    validate: Callable[[Any], None] | None = None


class CommandBus:
    """Routes each command variant to exactly one handler.

    Offloaded handlers are fire-and-forget: the optional ``validate`` step runs
    on the dispatching thread, the handler itself is submitted to the executor
    and the caller is acknowledged with ``"queued"`` straight away. Failures in
    the background are logged. ``join`` waits until every submitted handler has
    finished. Without an executor offloaded handlers run inline.
    """

    def __init__(self, executor: Executor | None = None) -> None:
        self._executor = executor
        self._handlers: dict[type, _Handler] = {}
        self._lock = Lock()
        self._idle = Condition()
        self._pending = 0

    def register(
        self,
        command_type: type,
        handler: Callable[[Any], Any],
        *,
        offload: bool = False,
        validate: Callable[[Any], None] | None = None,
    ) -> None:
        if command_type not in COMMAND_TYPES:
            raise ValueError(f"not a command type: {command_type!r}")
        with self._lock:
            if command_type in self._handlers:
                raise ValueError(f"handler already registered for {command_type.NAME}")
            self._handlers[command_type] = _Handler(fn=handler, offload=offload, validate=validate)

    @property
    def pending(self) -> int:
        with self._idle:
            return self._pending

    def join(self, timeout: float | None = None) -> bool:
        """Block until no background handler is running. False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def missing_handlers(self) -> list[str]:
        with self._lock:
            return [cls.NAME for cls in COMMAND_TYPES if cls not in self._handlers]

    def ensure_complete(self) -> None:
        missing = self.missing_handlers()
        if missing:
            raise RuntimeError(f"commands without handler: {', '.join(missing)}")

    def dispatch(self, raw: Any) -> Reply:
        correlation_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            message = raw if isinstance(raw, BridgeMessage) else BridgeMessage.from_dict(raw)
            correlation_id = message.correlation_id
            command = parse_command(message)
        except ProtocolError as exc:
            logger.warning("rejected malformed command: %s", exc)
            return Reply(ok=False, error=str(exc), correlation_id=_as_id(correlation_id))
        return self.execute(command, correlation_id=correlation_id)

    def execute(self, command: Command, *, correlation_id: str | None = None) -> Reply:
        with self._lock:
            handler = self._handlers.get(type(command))
        if handler is None:
            return Reply(ok=False, error=f"no handler for {command.NAME}", correlation_id=correlation_id)
        try:
            if handler.validate is not None:
                handler.validate(command)
            if handler.offload and self._executor is not None:
                self._submit(handler, command)
                value = QUEUED
            else:
                value = handler.fn(command)
        except SocialHubError as exc:
            logger.info("%s failed: %s", command.NAME, exc)
            return Reply(ok=False, error=str(exc), correlation_id=correlation_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s handler crashed", command.NAME)
            return Reply(ok=False, error=f"{command.NAME} failed: {exc}", correlation_id=correlation_id)
        return Reply(ok=True, value=value, correlation_id=correlation_id)

    def _submit(self, handler: _Handler, command: Command) -> None:
        with self._idle:
            self._pending += 1
        try:
            future = self._executor.submit(handler.fn, command)
        except BaseException:
            self._finished()
            raise
        future.add_done_callback(lambda done: self._on_done(command, done))

    def _on_done(self, command: Command, future: Future) -> None:
        try:
            if future.cancelled():
                logger.info("%s cancelled before it ran", command.NAME)
                return
            exc = future.exception()
            if isinstance(exc, SocialHubError):
                logger.warning("%s failed: %s", command.NAME, exc)
            elif exc is not None:
                logger.error("%s handler crashed", command.NAME, exc_info=exc)
        finally:
            self._finished()

    def _finished(self) -> None:
        with self._idle:
            self._pending -= 1
            self._idle.notify_all()


EventListener = Callable[[Any], None]


class EventBus:
    """Multicast, fire-and-forget event channel."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._lock = Lock()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: Event) -> int:
        """Deliver to every current listener; returns how many succeeded."""
        with self._lock:
            listeners = list(self._listeners)
        delivered = 0
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("listener failed on %s", event.NAME)
                continue
            delivered += 1
        return delivered


def _expect_str(value: Any, key: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(f"'{key}' must be a non-empty string")
    return value.strip()


def _optional_str(value: Any, key: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ProtocolError(f"'{key}' must be a string")
    return value


def _expect_bool(payload: dict[str, Any], key: str) -> bool:
    value = payload.get(key)
    if not isinstance(value, bool):
        raise ProtocolError(f"'{key}' must be a boolean")
    return value


def _as_id(value: Any) -> str | None:
    return None if value is None else str(value)
