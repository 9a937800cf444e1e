"""Configuration management for the directory change notifier."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from .models import coerce_flag


def _string_list(value: object, field_name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(part).strip() for part in value]
    else:
        raise ValueError(f"Configuration field '{field_name}' must be a string or a list")
    return tuple(item for item in items if item)


def _resolve_path(raw: object, base_path: Path | None) -> Path:
    candidate = Path(str(raw)).expanduser()
    if not candidate.is_absolute() and base_path is not None:
        candidate = base_path / candidate
    return candidate.resolve(strict=False)


@dataclass(frozen=True)
class SMTPSettings:
    """Connection parameters for the outbound mail relay."""

    host: Optional[str] = None
    port: int = 25
    username: Optional[str] = None
    password: Optional[str] = None
    use_ssl: bool = False
    timeout: float = 20.0

    @staticmethod
    def from_dict(data: Dict[str, object] | None) -> "SMTPSettings":
        if not data:
            return SMTPSettings()
        port = int(data.get("port", 25))
        return SMTPSettings(
            host=str(data["host"]) if data.get("host") else None,
            port=port,
            username=str(data["username"]) if data.get("username") else None,
            password=str(data["password"]) if data.get("password") is not None else None,
            use_ssl=coerce_flag(data.get("use_ssl", port == 465)),
            timeout=float(data.get("timeout", 20.0)),
        )


@dataclass(frozen=True)
class NotifierConfig:
    """Settings shared by every notification the service sends."""

    cloud_name: str
    company: str
    my_email: str
    operators: Tuple[str, ...]
    oper_prefix: str = "[ufds-alert] "
    user_prefix: str = ""
    whitelist: Tuple[str, ...] = ()
    initial_sync: bool = False
    templates_dir: Optional[Path] = None
    database_path: Optional[Path] = None
    smtp: SMTPSettings = field(default_factory=SMTPSettings)

    @staticmethod
    def from_dict(data: Dict[str, object], base_path: Path | None = None) -> "NotifierConfig":
        """Create a :class:`NotifierConfig` from raw dictionary data."""

        required_fields = {"cloud_name", "company", "my_email", "operators"}
        missing = {name for name in required_fields if not data.get(name)}
        if missing:
            raise ValueError(f"Missing required configuration fields: {', '.join(sorted(missing))}")

        operators = _string_list(data["operators"], "operators")
        if not operators:
            raise ValueError("Configuration must list at least one operator address")

        templates_dir = data.get("templates_dir")
        database_path = data.get("database_path")
        smtp_raw = data.get("smtp")
        if smtp_raw is not None and not isinstance(smtp_raw, dict):
            raise ValueError("Configuration field 'smtp' must be a mapping")

        return NotifierConfig(
            cloud_name=str(data["cloud_name"]),
            company=str(data["company"]),
            my_email=str(data["my_email"]),
            operators=operators,
            oper_prefix=str(data.get("oper_prefix", "[ufds-alert] ")),
            user_prefix=str(data.get("user_prefix", "")),
            whitelist=_string_list(data.get("whitelist"), "whitelist"),
            initial_sync=coerce_flag(data.get("initial_sync", False)),
            templates_dir=_resolve_path(templates_dir, base_path) if templates_dir else None,
            database_path=_resolve_path(database_path, base_path) if database_path else None,
            smtp=SMTPSettings.from_dict(smtp_raw),
        )


def load_config(config_path: Path) -> NotifierConfig:
    """Load notifier settings from a YAML file."""
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")

    return NotifierConfig.from_dict(raw, base_path=config_path.parent)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "ufds-alert.yaml").resolve(strict=False)
    return candidate


__all__ = ["NotifierConfig", "SMTPSettings", "load_config", "resolve_config_path"]
