"""CLI entrypoint for socialhub."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace

from socialhub.config import AppConfig, load_config
from socialhub.errors import SocialHubError
from socialhub.platforms import list_platforms, resolve
from socialhub.sessions import SessionManager
from socialhub.storage import tail_lines


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    config = load_config()
    _configure_logging(config.log_level)

    if args.command == "run":
        if args.headless:
            config = replace(config, headless=True)
        run_command(config, args.platform)
        return
    if args.command == "platforms":
        print(json.dumps([p.to_dict() for p in list_platforms()], indent=2, ensure_ascii=False))
        return
    if args.command == "sessions":
        manager = _session_manager(config)
        print(json.dumps([r.to_dict() for r in manager.records()], indent=2, ensure_ascii=False))
        return
    if args.command == "clear":
        clear_command(config, args.platform, clear_all=args.all)
        return
    if args.command == "audit":
        print("\n".join(tail_lines(config.audit_log, args.tail)))
        return

    parser.print_help()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="socialhub",
        description="Privacy-focused desktop wrapper for messaging sites.",
    )
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Open the embedded view")
    run_parser.add_argument(
        "--platform",
        type=str,
        default=None,
        help="Platform id to open first (default: last used, then messenger).",
    )
    run_parser.add_argument("--headless", action="store_true", help="Run Chromium headless.")

    subparsers.add_parser("platforms", help="List supported platforms")
    subparsers.add_parser("sessions", help="Show recorded platform sessions")

    clear_parser = subparsers.add_parser("clear", help="Wipe stored session data")
    clear_parser.add_argument("platform", nargs="?", default=None)
    clear_parser.add_argument("--all", action="store_true", help="Wipe every platform.")

    audit_parser = subparsers.add_parser("audit", help="Tail the session audit log")
    audit_parser.add_argument("--tail", type=int, default=50)
    return parser


def run_command(config: AppConfig, platform_id: str | None) -> None:
    from socialhub.orchestrator import Orchestrator

    if platform_id is not None:
        try:
            resolve(platform_id)
        except SocialHubError as exc:
            raise SystemExit(str(exc))
    Orchestrator(config).run(platform_id)


def clear_command(config: AppConfig, platform_id: str | None, *, clear_all: bool) -> None:
    if clear_all == (platform_id is not None):
        raise SystemExit("Pass either a platform id or --all.")
    manager = _session_manager(config)
    if clear_all:
        failed = manager.clear_all_sessions()
        if failed:
            raise SystemExit(f"Could not wipe: {', '.join(failed)}. See {config.audit_log}")
        print("Cleared all sessions.")
        return
    try:
        platform = resolve(platform_id)
        manager.clear_session(platform)
    except SocialHubError as exc:
        raise SystemExit(str(exc))
    print(f"Cleared session for {platform.display_name}.")


def _session_manager(config: AppConfig) -> SessionManager:
    return SessionManager(
        config.data_root,
        zero_persistence=config.zero_persistence,
        audit_log=config.audit_log,
    )


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    main()
