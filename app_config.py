"""Configuration for Meal Chat.

Values come from, lowest priority first: DEFAULTS, ~/.meal_chat/config.json,
the project's .env file, then the process environment.
"""

from __future__ import annotations

import json
import os
import stat
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from dotenv import dotenv_values

from meal_models import CatalogAuth

SCRIPT_DIR = Path(__file__).resolve().parent
APP_DIR = Path.home() / ".meal_chat"
CONFIG_FILE = APP_DIR / "config.json"

DEFAULTS = {
    "OPENAI_API_KEY": "",
    "OPENAI_MODEL": "gpt-4o-mini",
    "CRONOMETER_BASE_URL": "https://mobile.cronometer.com/api/v2",
    "CRONOMETER_USER_ID": "",
    "CRONOMETER_TOKEN": "",
    "PREFERENCES_FILE": str(APP_DIR / "preferences.json"),
    "SESSION_TIMEOUT_MINUTES": "10",
    "PARSER_MAX_ATTEMPTS": "3",
    "LOG_LEVEL": "INFO",
}


def load_user_config(path: Path = CONFIG_FILE) -> dict:
    if not path.exists():
        return dict(DEFAULTS)
    try:
        raw = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        return dict(DEFAULTS)

    merged = dict(DEFAULTS)
    for key in DEFAULTS:
        value = raw.get(key)
        if value is not None:
            merged[key] = str(value)
    return merged


def save_user_config(config: dict, path: Path = CONFIG_FILE) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2))
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass


def _as_int(value: str, fallback: int) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        return fallback


@dataclass
class Settings:
    openai_api_key: str
    openai_model: str
    cronometer_base_url: str
    cronometer_user_id: str
    cronometer_token: str
    preferences_file: str
    session_timeout: timedelta
    parser_max_attempts: int
    log_level: str

    def catalog_auth(self) -> CatalogAuth | None:
        if not self.cronometer_user_id or not self.cronometer_token:
            return None
        return CatalogAuth(user_id=self.cronometer_user_id, token=self.cronometer_token)


def load_settings(env_file: Path | None = None, config_file: Path = CONFIG_FILE, environ=None) -> Settings:
    values = load_user_config(config_file)
    env_path = env_file or SCRIPT_DIR / ".env"
    for key, value in dotenv_values(env_path).items():
        if key in DEFAULTS and value:
            values[key] = value
    environ = os.environ if environ is None else environ
    for key in DEFAULTS:
        if environ.get(key):
            values[key] = environ[key]

    return Settings(
        openai_api_key=values["OPENAI_API_KEY"],
        openai_model=values["OPENAI_MODEL"],
        cronometer_base_url=values["CRONOMETER_BASE_URL"],
        cronometer_user_id=values["CRONOMETER_USER_ID"],
        cronometer_token=values["CRONOMETER_TOKEN"],
        preferences_file=values["PREFERENCES_FILE"],
        session_timeout=timedelta(minutes=_as_int(values["SESSION_TIMEOUT_MINUTES"], 10)),
        parser_max_attempts=max(1, _as_int(values["PARSER_MAX_ATTEMPTS"], 3)),
        log_level=values["LOG_LEVEL"].upper(),
    )
