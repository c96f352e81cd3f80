"""Signed request pipeline for the bunq API."""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional, Protocol

import requests

from bunq_sync.bunq_models import Installation
from bunq_sync.errors import AuthError, ProtocolError, RetryExhausted, UpstreamError
from bunq_sync.keychain import KeyChain, verify_signature

LOGGER = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Bunq-Client-Request-Id"
AUTH_HEADER = "X-Bunq-Client-Authentication"
SIGNATURE_HEADER = "X-Bunq-Client-Signature"
SERVER_SIGNATURE_HEADER = "X-Bunq-Server-Signature"

# bunq only signs the session-server response reliably, every other endpoint
# fails verification. Until bunq confirms why, only this path is verified.
VERIFIED_PATHS = frozenset({"/session-server"})

AUTH_FAILURE_STATUSES = (401, 403)


class SessionProvider(Protocol):
    """What the transport needs from a session: its token and a way to renew it."""

    def get_token(self) -> str:
        ...

    def start_session(self) -> None:
        ...


class SignedTransport:
    """Builds, signs and sends bunq requests and checks what comes back."""

    def __init__(
        self,
        *,
        base_url: str,
        user_agent: str,
        keychain: KeyChain,
        max_retries: int = 3,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._user_agent = user_agent
        self._keychain = keychain
        self._max_retries = max(1, max_retries)
        self._timeout = timeout
        self._http = session or requests.Session()
        self._installation: Optional[Installation] = None
        self._session: Optional[SessionProvider] = None

    @property
    def installation(self) -> Optional[Installation]:
        return self._installation

    def set_installation(self, installation: Installation) -> None:
        self._installation = installation

    def attach_session(self, session: SessionProvider) -> None:
        self._session = session

    def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        *,
        token: Optional[str] = None,
        retry_on_auth: bool = True,
    ) -> bytes:
        """Send a request and return the raw response body.

        ``token`` overrides the authentication header for calls that must not
        use the attached session (session creation, session probing).
        """

        payload = json.dumps(body).encode("utf-8") if body is not None else b""
        last_error: Optional[AuthError] = None
        for attempt in range(1, self._max_retries + 1):
            try:
                return self._send(method, path, payload, token=token, attempt=attempt)
            except AuthError as exc:
                if not retry_on_auth or token is not None or self._session is None:
                    raise
                last_error = exc
                if attempt == self._max_retries:
                    break
                LOGGER.info(
                    "bunq answered %s to %s %s, possible session expiry; restarting session (attempt %d/%d)",
                    exc.status_code,
                    method,
                    path,
                    attempt,
                    self._max_retries,
                )
                self._session.start_session()

        LOGGER.error("Max retries reached for %s %s", method, path)
        raise RetryExhausted(
            f"{method} {path} still unauthorised after {self._max_retries} attempts",
            attempts=self._max_retries,
            last_error=last_error,
        )

    def _send(self, method: str, path: str, payload: bytes, *, token: Optional[str], attempt: int) -> bytes:
        request_id = str(uuid.uuid4())
        headers = self._build_headers(request_id, token)
        if payload:
            headers["Content-Type"] = "application/json"
            headers[SIGNATURE_HEADER] = self._keychain.sign(payload)

        url = f"{self._base_url}{path}"
        LOGGER.debug("bunq request %s %s id=%s try=%d", method, path, request_id, attempt)
        response = self._http.request(method, url, headers=headers, data=payload or None, timeout=self._timeout)
        content = response.content or b""
        echoed_id = response.headers.get(REQUEST_ID_HEADER)
        LOGGER.debug(
            "bunq response %s %s status=%s length=%d id=%s",
            method,
            path,
            response.status_code,
            len(content),
            echoed_id,
        )

        if echoed_id != request_id:
            LOGGER.error("Received response for another request on %s %s", method, path)
            raise ProtocolError(f"Response request id {echoed_id!r} does not match {request_id!r}")

        self._verify_response(path, response, content)

        status = response.status_code
        if 200 <= status <= 299:
            return content
        if status in AUTH_FAILURE_STATUSES:
            raise AuthError(f"bunq rejected {method} {path} with {status}", status_code=status, body=content)
        LOGGER.warning("Received error %s from bunq for %s %s", status, method, path)
        raise UpstreamError(f"bunq returned {status} for {method} {path}", status_code=status, body=content)

    def _build_headers(self, request_id: str, token: Optional[str]) -> Dict[str, str]:
        headers = {
            "User-Agent": self._user_agent,
            "Cache-Control": "no-cache",
            "X-Bunq-Language": "en_US",
            "X-Bunq-Region": "nl_NL",
            "X-Bunq-Geolocation": "0 0 0 0 000",
            REQUEST_ID_HEADER: request_id,
        }
        auth_token = token or self._select_token()
        if auth_token:
            headers[AUTH_HEADER] = auth_token
        else:
            LOGGER.info("No installation or session token, continuing without authentication")
        return headers

    def _select_token(self) -> Optional[str]:
        # A session token always wins over the installation token.
        if self._session is not None:
            return self._session.get_token()
        if self._installation is not None and self._installation.token:
            return self._installation.token
        return None

    def _verify_response(self, path: str, response: requests.Response, content: bytes) -> None:
        if self._installation is None:
            LOGGER.debug("No installation yet, skipping server signature check")
            return
        if not content or path not in VERIFIED_PATHS:
            return
        verify_signature(
            self._installation.server_key(),
            content,
            response.headers.get(SERVER_SIGNATURE_HEADER),
        )
        LOGGER.debug("bunq server signature verified for %s", path)
