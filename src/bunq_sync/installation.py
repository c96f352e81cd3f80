"""One-time registration of this client with bunq."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from bunq_sync.bunq_models import DeviceRegistration, Installation, merge_items, unwrap_response
from bunq_sync.errors import ConfigurationError, ProtocolError
from bunq_sync.keychain import KeyChain
from bunq_sync.state_manager import read_record, write_record
from bunq_sync.transport import SignedTransport

LOGGER = logging.getLogger(__name__)


class InstallationManager:
    """Registers the client public key once and keeps bunq's server key around."""

    def __init__(self, *, transport: SignedTransport, keychain: KeyChain, path: Path) -> None:
        self._transport = transport
        self._keychain = keychain
        self._path = path

    def ensure_installation(self) -> Installation:
        record = read_record(self._path)
        if record is not None:
            installation = Installation.from_record(record)
            # Fails loudly when the stored server key is unusable.
            installation.server_key()
            LOGGER.debug("Loaded bunq installation %s from %s", installation.id, self._path)
            self._transport.set_installation(installation)
            return installation

        LOGGER.info("No bunq installation stored, registering client key")
        body = self._transport.request(
            "POST",
            "/installation",
            {"client_public_key": self._keychain.public_key_pem},
        )
        installation = Installation.from_items(merge_items(unwrap_response(body)))
        if not installation.token:
            raise ProtocolError("bunq installation response did not contain a token")
        installation.server_key()

        write_record(self._path, installation.to_record())
        LOGGER.info("Registered bunq installation %s", installation.id)
        self._transport.set_installation(installation)
        return installation


class DeviceRegistrar:
    """Registers this device (and the IPs it may call from) once.

    The marker file is trusted as is: when it exists nothing is sent, even if
    bunq has since forgotten the device.
    """

    def __init__(
        self,
        *,
        transport: SignedTransport,
        path: Path,
        description: str,
        secret: str,
        permitted_ips: Optional[Sequence[str]] = None,
    ) -> None:
        if not secret:
            raise ConfigurationError("A bunq API key is required to register the device")
        self._transport = transport
        self._path = path
        self._description = description
        self._secret = secret
        self._permitted_ips: List[str] = list(permitted_ips or ["*"])

    def ensure_device_registered(self, installation: Installation) -> Optional[DeviceRegistration]:
        if self._path.exists():
            LOGGER.debug("Device already registered (%s exists)", self._path)
            return None

        LOGGER.info("Registering device %r with bunq", self._description)
        body = self._transport.request(
            "POST",
            "/device-server",
            {
                "description": self._description,
                "secret": self._secret,
                "permitted_ips": self._permitted_ips,
            },
            token=installation.token,
        )
        registration = DeviceRegistration.from_items(merge_items(unwrap_response(body)))
        write_record(self._path, registration.to_record())
        LOGGER.info("Registered bunq device %s", registration.id)
        return registration
