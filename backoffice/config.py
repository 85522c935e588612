from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

CONFIG_ENV = "BACKOFFICE_CONFIG"

ENV_KEYS = {
    "data_dir": "BACKOFFICE_DATA_DIR",
    "db_name": "BACKOFFICE_DB_NAME",
    "admin_email": "BACKOFFICE_ADMIN_EMAIL",
    "admin_password": "BACKOFFICE_ADMIN_PASSWORD",
    "admin_name": "BACKOFFICE_ADMIN_NAME",
    "secret_key": "BACKOFFICE_SECRET_KEY",
    "https_only": "BACKOFFICE_HTTPS_ONLY",
    "allow_registration": "BACKOFFICE_ALLOW_REGISTRATION",
    "log_level": "BACKOFFICE_LOG_LEVEL",
}
BOOL_KEYS = {"https_only", "allow_registration"}


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    data_dir: Path = Path(".backoffice")
    db_name: str = "estimates.db"
    admin_email: str = "admin@example.com"
    admin_password: str = "admin1234"
    admin_name: str = "Admin"
    secret_key: str = ""
    https_only: bool = False
    allow_registration: bool = True
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    def with_data_dir(self, data_dir: Path) -> "Settings":
        return replace(self, data_dir=resolve_data_dir(data_dir))


def _as_bool(value: Any) -> bool:
    text = str(value or "").strip().lower()
    return text in {"1", "true", "yes", "on"}


def resolve_data_dir(raw: Path | str, *, base: Path | None = None) -> Path:
    p = Path(raw)
    if not p.is_absolute():
        p = ((base or Path.cwd()) / p).resolve()
    return p


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping (YAML dict).")
    unknown = sorted(set(raw) - set(ENV_KEYS))
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
    return raw


def load_settings(path: Path | None = None) -> Settings:
    """Defaults, then the YAML file (if any), then BACKOFFICE_* environment variables."""
    load_dotenv()

    values: dict[str, Any] = {}
    base = Path.cwd()
    config_path = path
    if config_path is None and (os.getenv(CONFIG_ENV, "") or "").strip():
        config_path = Path(os.environ[CONFIG_ENV].strip())
    if config_path is not None:
        values.update(_read_yaml(config_path))
        # a relative data_dir in the file is relative to the file
        base = config_path.parent

    for key, env in ENV_KEYS.items():
        raw = os.getenv(env)
        if raw is not None and raw.strip():
            values[key] = raw.strip()
            if key == "data_dir":
                base = Path.cwd()

    for key in BOOL_KEYS:
        if key in values:
            values[key] = _as_bool(values[key])
    for key in ("db_name", "admin_email", "admin_password", "admin_name", "secret_key", "log_level"):
        if key in values:
            values[key] = str(values[key])
    values["data_dir"] = resolve_data_dir(values.get("data_dir", ".backoffice"), base=base)
    values["log_level"] = str(values.get("log_level", "INFO")).upper()
    return Settings(**values)
