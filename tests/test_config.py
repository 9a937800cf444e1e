from __future__ import annotations

from pathlib import Path

import pytest

from ufds_alert.config import NotifierConfig, SMTPSettings, load_config, resolve_config_path


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_with_defaults(tmp_path: Path) -> None:
    config_path = _write(
        tmp_path / "ufds-alert.yaml",
        """
cloud_name: Example Cloud
company: Example Corp
my_email: alerts@example.com
operators: ops@example.com, security@example.com
""",
    )

    config = load_config(config_path)

    assert config.operators == ("ops@example.com", "security@example.com")
    assert config.oper_prefix == "[ufds-alert] "
    assert config.user_prefix == ""
    assert config.whitelist == ()
    assert config.initial_sync is False
    assert config.templates_dir is None
    assert config.smtp == SMTPSettings()


def test_load_config_full(tmp_path: Path) -> None:
    config_path = _write(
        tmp_path / "ufds-alert.yaml",
        """
cloud_name: Example Cloud
company: Example Corp
my_email: alerts@example.com
operators: [ops@example.com]
oper_prefix: "[oper] "
user_prefix: "[cloud] "
whitelist: [U1, U2]
initial_sync: true
templates_dir: tpl
database_path: data/alerts.sqlite3
smtp:
  host: mail.example.com
  port: 465
  username: relay
  password: secret
""",
    )

    config = load_config(config_path)

    assert config.whitelist == ("U1", "U2")
    assert config.initial_sync is True
    assert config.templates_dir == (tmp_path / "tpl").resolve()
    assert config.database_path == (tmp_path / "data" / "alerts.sqlite3").resolve()
    assert config.smtp.host == "mail.example.com"
    assert config.smtp.use_ssl is True
    assert config.smtp.username == "relay"


def test_missing_required_fields_are_reported() -> None:
    with pytest.raises(ValueError) as excinfo:
        NotifierConfig.from_dict({"cloud_name": "Example Cloud"})

    assert "company, my_email, operators" in str(excinfo.value)


def test_empty_operator_list_is_rejected() -> None:
    with pytest.raises(ValueError):
        NotifierConfig.from_dict(
            {"cloud_name": "c", "company": "c", "my_email": "a@example.com", "operators": " , "}
        )


def test_non_mapping_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        load_config(_write(tmp_path / "bad.yaml", "- just\n- a list\n"))


def test_resolve_config_path(tmp_path: Path) -> None:
    assert resolve_config_path(str(tmp_path / "custom.yaml")) == (tmp_path / "custom.yaml").resolve()
    default = resolve_config_path(None)
    assert default.name == "ufds-alert.yaml"
    assert default.parent.name == "config"


def test_quoted_boolean_strings_are_parsed(tmp_path: Path) -> None:
    config_path = _write(
        tmp_path / "ufds-alert.yaml",
        """
cloud_name: Example Cloud
company: Example Corp
my_email: alerts@example.com
operators: ops@example.com
initial_sync: "false"
smtp:
  host: mail.example.com
  port: 465
  use_ssl: "no"
""",
    )

    config = load_config(config_path)

    assert config.initial_sync is False
    assert config.smtp.use_ssl is False
