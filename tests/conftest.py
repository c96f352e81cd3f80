import base64
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cryptography.hazmat.primitives import hashes, serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import padding, rsa  # noqa: E402

from bunq_sync.bunq_models import Installation  # noqa: E402
from bunq_sync.keychain import KeyChain  # noqa: E402
from bunq_sync.transport import SignedTransport  # noqa: E402

BUNQ_URL = "https://bunq.test/v1"
REQUEST_ID_HEADER = "X-Bunq-Client-Request-Id"
SERVER_SIGNATURE_HEADER = "X-Bunq-Server-Signature"


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}

    def json(self) -> Any:
        return json.loads(self.content)


@dataclass
class Call:
    method: str
    path: str
    headers: Dict[str, str]
    data: Optional[bytes]

    @property
    def body(self) -> Any:
        return json.loads(self.data) if self.data else None


class FakeBunqSession:
    """Stands in for ``requests.Session``; answers like bunq does.

    Routes map ``(method, path)`` to a queue of ``(status, payload)`` answers;
    the last answer of a queue repeats forever.
    """

    def __init__(self, server_key: Optional[rsa.RSAPrivateKey] = None):
        self.server_key = server_key
        self.routes: Dict[Tuple[str, str], List[Tuple[int, Any]]] = {}
        self.calls: List[Call] = []
        self.echo_request_id = True
        self.signature_override: Optional[str] = None

    def add(self, method: str, path: str, *answers: Tuple[int, Any]) -> None:
        self.routes.setdefault((method, path), []).extend(answers)

    def request(self, method, url, headers=None, data=None, timeout=None):
        assert url.startswith(BUNQ_URL)
        path = url[len(BUNQ_URL):]
        self.calls.append(Call(method, path, dict(headers or {}), data))
        queue = self.routes.get((method, path))
        if not queue:
            raise AssertionError(f"Unexpected bunq request {method} {path}")
        status, payload = queue.pop(0) if len(queue) > 1 else queue[0]
        content = json.dumps(payload).encode("utf-8") if payload is not None else b""

        response_headers = {}
        if self.echo_request_id:
            response_headers[REQUEST_ID_HEADER] = headers[REQUEST_ID_HEADER]
        else:
            response_headers[REQUEST_ID_HEADER] = "someone-elses-request"
        if self.signature_override is not None:
            response_headers[SERVER_SIGNATURE_HEADER] = self.signature_override
        elif self.server_key is not None and content:
            response_headers[SERVER_SIGNATURE_HEADER] = sign_with(self.server_key, content)
        return FakeResponse(status, content, response_headers)

    def calls_to(self, method: str, path: str) -> List[Call]:
        return [call for call in self.calls if call.method == method and call.path == path]


def sign_with(key: rsa.RSAPrivateKey, data: bytes) -> str:
    return base64.b64encode(key.sign(data, padding.PKCS1v15(), hashes.SHA256())).decode("ascii")


def bunq_items(*items: Dict[str, Any]) -> Dict[str, Any]:
    return {"Response": list(items)}


def installation_items(server_public_pem: str, token: str = "installation-token") -> Dict[str, Any]:
    return bunq_items(
        {"ServerPublicKey": {"server_public_key": server_public_pem}},
        {"Token": {"id": 5, "created": "2024-01-01 00:00:00.000000", "token": token}},
        {"Id": {"id": 1}},
    )


def session_items(token: str = "session-token", user_id: int = 7, session_id: int = 11) -> Dict[str, Any]:
    return bunq_items(
        {"Id": {"id": session_id}},
        {"Token": {"id": 12, "token": token}},
        {"UserPerson": {"id": user_id, "display_name": "Test User"}},
    )


@pytest.fixture(scope="session")
def server_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def server_public_pem(server_key) -> str:
    return server_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


@pytest.fixture(scope="session")
def client_keychain(tmp_path_factory) -> KeyChain:
    storage = tmp_path_factory.mktemp("client-keys")
    return KeyChain(private_key_path=storage / "client.key", public_key_path=storage / "client.pub.key")


@pytest.fixture
def installation(server_public_pem) -> Installation:
    return Installation(id=1, token="installation-token", server_public_key=server_public_pem)


@pytest.fixture
def bunq_http(server_key) -> FakeBunqSession:
    return FakeBunqSession(server_key)


@pytest.fixture
def transport(client_keychain, bunq_http) -> SignedTransport:
    return SignedTransport(
        base_url=BUNQ_URL,
        user_agent="TestAgent/1.0",
        keychain=client_keychain,
        session=bunq_http,
    )
