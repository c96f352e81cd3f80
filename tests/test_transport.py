import uuid

import pytest

from bunq_sync.errors import AuthError, CryptoError, ProtocolError, RetryExhausted, UpstreamError
from bunq_sync.keychain import verify_signature
from conftest import bunq_items, session_items


class StubSession:
    def __init__(self):
        self.token = "session-1"
        self.restarts = 0

    def get_token(self):
        return self.token

    def start_session(self):
        self.restarts += 1
        self.token = f"session-{self.restarts + 1}"


def test_signed_post_carries_protocol_headers(transport, bunq_http, installation, client_keychain):
    transport.set_installation(installation)
    bunq_http.add("POST", "/device-server", (200, bunq_items({"Id": {"id": 42}})))

    transport.request("POST", "/device-server", {"description": "test"})

    call = bunq_http.calls[0]
    assert call.headers["User-Agent"] == "TestAgent/1.0"
    assert call.headers["Cache-Control"] == "no-cache"
    assert call.headers["X-Bunq-Client-Authentication"] == "installation-token"
    uuid.UUID(call.headers["X-Bunq-Client-Request-Id"])
    verify_signature(client_keychain.keypair.public_key, call.data, call.headers["X-Bunq-Client-Signature"])


def test_each_request_gets_its_own_request_id(transport, bunq_http):
    bunq_http.add("GET", "/user", (200, bunq_items()))
    transport.request("GET", "/user")
    transport.request("GET", "/user")
    first, second = (call.headers["X-Bunq-Client-Request-Id"] for call in bunq_http.calls)
    assert first != second


def test_empty_body_is_not_signed_and_unauthenticated_calls_are_allowed(transport, bunq_http):
    bunq_http.add("GET", "/user", (200, bunq_items()))
    transport.request("GET", "/user")

    call = bunq_http.calls[0]
    assert call.data is None
    assert "X-Bunq-Client-Signature" not in call.headers
    assert "X-Bunq-Client-Authentication" not in call.headers


def test_session_token_takes_priority_over_installation_token(transport, bunq_http, installation):
    transport.set_installation(installation)
    transport.attach_session(StubSession())
    bunq_http.add("GET", "/user", (200, bunq_items()))

    transport.request("GET", "/user")

    assert bunq_http.calls[0].headers["X-Bunq-Client-Authentication"] == "session-1"


def test_explicit_token_overrides_session(transport, bunq_http, installation):
    transport.set_installation(installation)
    transport.attach_session(StubSession())
    bunq_http.add("GET", "/user/7", (200, bunq_items()))

    transport.request("GET", "/user/7", token="explicit-token")

    assert bunq_http.calls[0].headers["X-Bunq-Client-Authentication"] == "explicit-token"


@pytest.mark.parametrize("status", [200, 401, 500])
def test_mismatched_request_id_is_a_protocol_error(transport, bunq_http, status):
    transport.attach_session(StubSession())
    bunq_http.echo_request_id = False
    bunq_http.add("GET", "/user", (status, bunq_items()))

    with pytest.raises(ProtocolError):
        transport.request("GET", "/user")
    assert len(bunq_http.calls) == 1


def test_auth_failure_restarts_session_and_retries(transport, bunq_http):
    session = StubSession()
    transport.attach_session(session)
    bunq_http.add("GET", "/user", (401, {"Error": []}), (200, bunq_items({"UserPerson": {"id": 7}})))

    body = transport.request("GET", "/user")

    assert b"UserPerson" in body
    assert session.restarts == 1
    tokens = [call.headers["X-Bunq-Client-Authentication"] for call in bunq_http.calls]
    assert tokens == ["session-1", "session-2"]


def test_auth_failure_is_bounded_by_max_retries(transport, bunq_http):
    session = StubSession()
    transport.attach_session(session)
    bunq_http.add("GET", "/user", (403, {"Error": [{"error_description": "Insufficient authorisation."}]}))

    with pytest.raises(RetryExhausted) as excinfo:
        transport.request("GET", "/user")

    assert len(bunq_http.calls_to("GET", "/user")) == 3
    assert session.restarts == 2
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, AuthError)


def test_auth_failure_without_session_is_not_retried(transport, bunq_http, installation):
    transport.set_installation(installation)
    bunq_http.add("POST", "/device-server", (401, {"Error": []}))

    with pytest.raises(AuthError) as excinfo:
        transport.request("POST", "/device-server", {"secret": "x"})
    assert excinfo.value.status_code == 401
    assert len(bunq_http.calls) == 1


def test_auth_failure_with_retry_disabled(transport, bunq_http):
    session = StubSession()
    transport.attach_session(session)
    bunq_http.add("GET", "/user", (401, {"Error": []}))

    with pytest.raises(AuthError):
        transport.request("GET", "/user", retry_on_auth=False)
    assert session.restarts == 0


def test_other_errors_carry_the_raw_body(transport, bunq_http):
    bunq_http.add("GET", "/user", (500, {"Error": [{"error_description": "boom"}]}))

    with pytest.raises(UpstreamError) as excinfo:
        transport.request("GET", "/user")
    assert excinfo.value.status_code == 500
    assert "boom" in excinfo.value.detail
    assert len(bunq_http.calls) == 1


def test_session_server_response_signature_is_verified(transport, bunq_http, installation):
    transport.set_installation(installation)
    bunq_http.add("POST", "/session-server", (200, session_items()))

    body = transport.request("POST", "/session-server", {"secret": "key"})

    assert b"session-token" in body


def test_session_server_bad_signature_is_fatal(transport, bunq_http, installation, client_keychain):
    transport.set_installation(installation)
    bunq_http.signature_override = client_keychain.sign(b"something else")
    bunq_http.add("POST", "/session-server", (200, session_items()))

    with pytest.raises(CryptoError):
        transport.request("POST", "/session-server", {"secret": "key"})


def test_session_server_missing_signature_is_fatal(transport, bunq_http, installation):
    transport.set_installation(installation)
    bunq_http.server_key = None
    bunq_http.add("POST", "/session-server", (200, session_items()))

    with pytest.raises(CryptoError):
        transport.request("POST", "/session-server", {"secret": "key"})


def test_other_endpoints_skip_signature_verification(transport, bunq_http, installation):
    transport.set_installation(installation)
    bunq_http.signature_override = "bm90IGEgc2lnbmF0dXJl"
    bunq_http.add("GET", "/user", (200, bunq_items()))

    transport.request("GET", "/user")
