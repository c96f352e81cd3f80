"""Simple persistence for the records bunq hands us during bootstrap."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from bunq_sync.errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

OWNER_ONLY = 0o600


def read_record(path: Path) -> Optional[Dict[str, Any]]:
    """Return the JSON object stored at ``path`` or ``None`` when there is none.

    A file that exists but cannot be decoded raises :class:`ConfigurationError`
    so callers can decide whether to discard it.
    """

    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Stored record {path} is corrupt: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Cannot read stored record {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Stored record {path} is not a JSON object")
    return payload


def write_record(path: Path, payload: Dict[str, Any]) -> None:
    """Replace the record at ``path`` as a whole, readable by the owner only."""

    write_bytes(path, json.dumps(payload, indent=2).encode("utf-8"))


def write_bytes(path: Path, data: bytes) -> None:
    if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, OWNER_ONLY)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_path, OWNER_ONLY)
        os.replace(tmp_path, path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise ConfigurationError(f"Cannot write {path}: {exc}") from exc
    LOGGER.debug("Stored %s", path)


def discard_record(path: Path) -> None:
    if path.exists():
        LOGGER.debug("Removing stored record %s", path)
        path.unlink(missing_ok=True)
