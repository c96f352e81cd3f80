"""RSA key material used to sign requests to bunq."""
from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from bunq_sync.errors import ConfigurationError, CryptoError
from bunq_sync.state_manager import write_bytes

LOGGER = logging.getLogger(__name__)

MIN_KEY_SIZE = 2048


@dataclass(frozen=True)
class KeyPair:
    """The client's identity: private key plus its PEM encodings."""

    private_key: Optional[rsa.RSAPrivateKey]
    public_key: rsa.RSAPublicKey
    private_key_pem: Optional[bytes]
    public_key_pem: bytes


class KeyChain:
    """Loads the client keypair from disk, creating and storing it on first use.

    The private and public key live in separate files. Either can be missing:
    a missing private key is generated (and its public key written alongside),
    a missing public key is derived from the private key. A keychain built
    without a private key path can still load a public key for verification,
    but cannot sign.
    """

    def __init__(
        self,
        *,
        private_key_path: Optional[Path],
        public_key_path: Path,
        key_size: int = MIN_KEY_SIZE,
    ) -> None:
        if key_size < MIN_KEY_SIZE:
            raise ConfigurationError(f"RSA keys must be at least {MIN_KEY_SIZE} bits, got {key_size}")
        self._private_key_path = private_key_path
        self._public_key_path = public_key_path
        self._key_size = key_size
        self._keypair = self.load_or_create()

    @property
    def keypair(self) -> KeyPair:
        return self._keypair

    @property
    def public_key_pem(self) -> str:
        return self._keypair.public_key_pem.decode("ascii")

    def load_or_create(self) -> KeyPair:
        private_key: Optional[rsa.RSAPrivateKey] = None
        private_pem: Optional[bytes] = None
        generated = False

        if self._private_key_path is not None:
            if self._private_key_path.exists():
                private_pem = self._private_key_path.read_bytes()
                private_key = _parse_private_key(private_pem, self._private_key_path)
            else:
                private_key, private_pem = self._create_private_key()
                generated = True

        if self._public_key_path.exists() and not generated:
            public_pem = self._public_key_path.read_bytes()
            public_key = load_public_key(public_pem)
        else:
            if private_key is None:
                raise ConfigurationError(
                    f"Cannot create public key {self._public_key_path}, the private key is missing"
                )
            public_key, public_pem = self._create_public_key(private_key)

        return KeyPair(
            private_key=private_key,
            public_key=public_key,
            private_key_pem=private_pem,
            public_key_pem=public_pem,
        )

    def sign(self, data: bytes) -> str:
        """Return the base64 PKCS#1 v1.5 SHA-256 signature of ``data``."""

        private_key = self._keypair.private_key
        if private_key is None:
            raise ConfigurationError("Cannot sign, no private key in the keychain")
        try:
            signature = private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        except (ValueError, TypeError) as exc:
            raise CryptoError(f"Signing failed: {exc}") from exc
        return base64.b64encode(signature).decode("ascii")

    def _create_private_key(self) -> tuple[rsa.RSAPrivateKey, bytes]:
        if self._private_key_path is None:
            raise ConfigurationError("No private key path configured, cannot create a client key")
        LOGGER.info("Generating new %d bit client key at %s", self._key_size, self._private_key_path)
        try:
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=self._key_size)
            private_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise CryptoError(f"Cannot generate client key: {exc}") from exc
        write_bytes(self._private_key_path, private_pem)
        return private_key, private_pem

    def _create_public_key(self, private_key: rsa.RSAPrivateKey) -> tuple[rsa.RSAPublicKey, bytes]:
        public_key = private_key.public_key()
        public_pem = public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        write_bytes(self._public_key_path, public_pem)
        return public_key, public_pem


def load_public_key(pem: bytes | str) -> rsa.RSAPublicKey:
    """Parse a SubjectPublicKeyInfo PEM into an RSA public key."""

    raw = pem.encode("ascii") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_public_key(raw)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CryptoError(f"Cannot parse public key: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise CryptoError(f"Expected an RSA public key, got {type(key).__name__}")
    return key


def verify_signature(public_key: rsa.RSAPublicKey, data: bytes, signature: Optional[str]) -> None:
    """Raise :class:`CryptoError` unless ``signature`` signs ``data``."""

    if not signature:
        raise CryptoError("Missing signature")
    try:
        raw_signature = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CryptoError(f"Cannot decode signature: {exc}") from exc
    try:
        public_key.verify(raw_signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature as exc:
        raise CryptoError("Signature does not match") from exc


def _parse_private_key(pem: bytes, path: Path) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CryptoError(f"Cannot parse private key {path}: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CryptoError(f"{path} does not hold an RSA private key")
    return key
