"""Settings for the sync, read from a JSON file and the environment."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from bunq_sync.errors import ConfigurationError

# Project root (2 levels up from this file: src/bunq_sync/config.py -> root)
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "config.json"

ENV_KEYS = {
    "bunq_api_key": "BUNQ_API_KEY",
    "bunq_api_base_url": "BUNQ_API_BASE_URL",
    "storage_location": "STORAGE_LOCATION",
    "private_key_file": "BUNQ_PRIVATE_KEY_FILE_NAME",
    "public_key_file": "BUNQ_PUBLIC_KEY_FILE_NAME",
    "installation_file": "BUNQ_INSTALLATION_FILE_NAME",
    "device_server_file": "BUNQ_DEVICE_SERVER_FILE_NAME",
    "session_server_file": "BUNQ_SESSION_SERVER_FILE_NAME",
    "user_agent": "BUNQ_USER_AGENT",
    "permitted_ips": "BUNQ_PERMITTED_IPS",
    "firefly_api_base_url": "FIREFLY_API_BASE_URL",
    "firefly_api_key": "FIREFLY_API_KEY",
}


@dataclass
class SyncConfig:
    bunq_api_key: str
    firefly_api_base_url: str
    firefly_api_key: str
    bunq_api_base_url: str = "https://public-api.sandbox.bunq.com/v1"
    storage_location: Path = Path("./storage/")
    private_key_file: str = "bunq_client.key"
    public_key_file: str = "bunq_client.pub.key"
    installation_file: str = "bunq_installation.json"
    device_server_file: str = "bunq_device_server.json"
    session_server_file: str = "bunq_session_server.json"
    user_agent: str = "BunqFireflySync/1.0"
    permitted_ips: List[str] = field(default_factory=lambda: ["*"])
    page_size: int = 50
    request_timeout: float = 30
    max_retries: int = 3
    ignore_rules: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def private_key_path(self) -> Path:
        return self.storage_location / self.private_key_file

    @property
    def public_key_path(self) -> Path:
        return self.storage_location / self.public_key_file

    @property
    def installation_path(self) -> Path:
        return self.storage_location / self.installation_file

    @property
    def device_server_path(self) -> Path:
        return self.storage_location / self.device_server_file

    @property
    def session_server_path(self) -> Path:
        return self.storage_location / self.session_server_file


def load_config(path: Optional[str | Path] = None, environ: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """Build a :class:`SyncConfig` from the config file overlaid with environment variables.

    The file is optional when every required value comes from the environment.
    """

    environ = os.environ if environ is None else environ
    if path is None:
        env_path = environ.get("SYNC_CONFIG")
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
        required = bool(env_path)
    else:
        config_path = Path(path)
        required = True

    raw: Dict[str, Any] = {}
    if config_path.exists():
        raw = _read_json(config_path)
    elif required:
        raise ConfigurationError(f"Config file not found: {config_path}")

    for key, env_name in ENV_KEYS.items():
        value = environ.get(env_name)
        if value:
            raw[key] = value

    return _build(raw)


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as config_file:
            payload = json.load(config_file)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read config file {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    return payload


def _build(raw: Dict[str, Any]) -> SyncConfig:
    missing = [key for key in ("bunq_api_key", "firefly_api_base_url", "firefly_api_key") if not raw.get(key)]
    if missing:
        names = ", ".join(f"{key} ({ENV_KEYS[key]})" for key in missing)
        raise ConfigurationError(f"Missing required settings: {names}")

    values: Dict[str, Any] = {
        key: raw[key]
        for key in SyncConfig.__dataclass_fields__
        if key in raw and raw[key] not in (None, "")
    }
    values["bunq_api_base_url"] = str(values.get("bunq_api_base_url", SyncConfig.bunq_api_base_url)).rstrip("/")
    values["firefly_api_base_url"] = str(values["firefly_api_base_url"]).rstrip("/")
    if "storage_location" in values:
        values["storage_location"] = Path(values["storage_location"])
    if "permitted_ips" in values:
        values["permitted_ips"] = _split_ips(values["permitted_ips"])

    try:
        for key in ("page_size", "max_retries"):
            if key in values:
                values[key] = int(values[key])
        if "request_timeout" in values:
            values["request_timeout"] = float(values["request_timeout"])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid numeric setting: {exc}") from exc

    if "ignore_rules" in values and not isinstance(values["ignore_rules"], list):
        raise ConfigurationError("ignore_rules must be a list")
    return SyncConfig(**values)


def _split_ips(value: Any) -> List[str]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(item) for item in value]
    ips = [item.strip() for item in items if item.strip()]
    return ips or ["*"]
