"""Command-line interface for the UFDS change notifier."""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, List, Sequence

import anyio

from ufds_alert.config import NotifierConfig, load_config, resolve_config_path
from ufds_alert.database import Database, resolve_database_path
from ufds_alert.mailer import build_mailer
from ufds_alert.models import NotificationEvent
from ufds_alert.notifier import Notifier
from ufds_alert.templates import TemplateRenderer

logger = logging.getLogger("ufds_alert.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="UFDS change notification utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration (defaults to UFDS_ALERT_CONFIG or config/ufds-alert.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Initialise the notifier database")

    preview_parser = subparsers.add_parser("preview", help="Render a mail template to stdout")
    preview_parser.add_argument("template", help="Template name, e.g. pw-changed")
    preview_parser.add_argument(
        "--vars",
        default="{}",
        help="JSON object with the variables passed to the template",
    )

    dispatch_parser = subparsers.add_parser(
        "dispatch", help="Send the notifications for events stored in a JSON file"
    )
    dispatch_parser.add_argument("events", help="JSON file holding one event or a list of events")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    return parser.parse_args(args_list)


def _load_config(path: str | None) -> NotifierConfig:
    config_path = resolve_config_path(path or os.getenv("UFDS_ALERT_CONFIG"))
    try:
        return load_config(config_path)
    except FileNotFoundError as exc:
        raise SystemExit(f"Configuration file not found: {config_path}") from exc
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration in {config_path}: {exc}") from exc


def _initialise_database(config: NotifierConfig) -> Database:
    env_path = os.getenv("UFDS_ALERT_DB_PATH")
    if env_path or config.database_path is None:
        db_path = resolve_database_path(env_path)
    else:
        db_path = config.database_path
    database = Database(db_path)
    database.initialize()
    logger.info("Database initialised at %s", db_path)
    return database


def _preview(config: NotifierConfig, template: str, raw_vars: str) -> None:
    try:
        variables = json.loads(raw_vars)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"--vars is not valid JSON: {exc}") from exc
    if not isinstance(variables, dict):
        raise SystemExit("--vars must be a JSON object")

    renderer = TemplateRenderer(
        config.templates_dir,
        cloud_name=config.cloud_name,
        company=config.company,
    )
    print(renderer.render(template, variables), end="")


def _load_events(path: Path) -> List[NotificationEvent]:
    try:
        payload: Any = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise SystemExit(f"Event file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Event file {path} is not valid JSON: {exc}") from exc

    items = payload if isinstance(payload, list) else [payload]
    events: List[NotificationEvent] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise SystemExit(f"Event #{index} in {path} must be a JSON object")
        try:
            events.append(NotificationEvent.from_dict(item))
        except ValueError as exc:
            raise SystemExit(f"Event #{index} in {path} is invalid: {exc}") from exc
    return events


def _dispatch(config: NotifierConfig, database: Database, path: Path) -> None:
    events = _load_events(path)
    notifier = Notifier(config, database, build_mailer(config.smtp))

    async def _run_all() -> None:
        for event in events:
            await notifier.handle(event)

    anyio.run(_run_all)
    logger.info("Processed %d event(s) from %s", len(events), path)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    config = _load_config(args.config)

    if args.command == "init-db":
        _initialise_database(config)
        print("Database initialisation complete.")
    elif args.command == "preview":
        _preview(config, args.template, args.vars)
    elif args.command == "dispatch":
        database = _initialise_database(config)
        _dispatch(config, database, Path(args.events))


if __name__ == "__main__":
    main()
