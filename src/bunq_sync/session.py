"""bunq session lifecycle: load, validate, renew."""
from __future__ import annotations

import enum
import logging
from pathlib import Path
from typing import Optional

from bunq_sync.bunq_models import Installation, SessionRecord, merge_items, unwrap_response
from bunq_sync.errors import ConfigurationError, ProtocolError, SessionStateError, SyncError
from bunq_sync.state_manager import discard_record, read_record, write_record
from bunq_sync.transport import SignedTransport

LOGGER = logging.getLogger(__name__)


class SessionState(enum.Enum):
    NO_SESSION = "no_session"
    LOADING = "loading"
    VALID = "valid"
    INVALID = "invalid"
    AUTHENTICATING = "authenticating"


class SessionManager:
    """Holds the session token used for every call after bootstrap.

    A stored session is reused across runs after one cheap check request;
    otherwise a new one is created with the API key. The transport calls
    :meth:`start_session` when bunq rejects the current token.
    """

    def __init__(
        self,
        *,
        transport: SignedTransport,
        installation: Installation,
        api_key: str,
        path: Path,
    ) -> None:
        if not api_key:
            raise ConfigurationError("A bunq API key is required to start a session")
        self._transport = transport
        self._installation = installation
        self._api_key = api_key
        self._path = path
        self._record: Optional[SessionRecord] = None
        self._state = SessionState.NO_SESSION

        if not self._load():
            self.start_session()

    @property
    def state(self) -> SessionState:
        return self._state

    def get_token(self) -> str:
        if self._state is not SessionState.VALID or self._record is None or not self._record.token:
            raise SessionStateError(f"No valid bunq session (state: {self._state.value})")
        return self._record.token

    def get_user_id(self) -> int:
        if self._state is not SessionState.VALID or self._record is None or self._record.user_id is None:
            raise SessionStateError(f"No valid bunq session (state: {self._state.value})")
        return int(self._record.user_id)

    def start_session(self) -> None:
        LOGGER.info("Starting new bunq session")
        self._state = SessionState.AUTHENTICATING
        try:
            body = self._transport.request(
                "POST",
                "/session-server",
                {"secret": self._api_key},
                token=self._installation.token,
                retry_on_auth=False,
            )
            record = SessionRecord.from_items(merge_items(unwrap_response(body)))
            if not record.is_complete:
                raise ProtocolError("bunq session response is missing the token or the user")
            write_record(self._path, record.to_record())
        except Exception:
            LOGGER.error("Starting new bunq session failed")
            self._state = SessionState.INVALID
            raise

        self._record = record
        self._state = SessionState.VALID
        self._transport.attach_session(self)
        LOGGER.debug("bunq session %s stored for user %s", record.id, record.user_id)

    def _load(self) -> bool:
        self._state = SessionState.LOADING
        try:
            stored = read_record(self._path)
        except ConfigurationError:
            LOGGER.warning("Stored bunq session is unreadable, discarding it")
            stored = None

        record = SessionRecord.from_record(stored) if stored is not None else None
        if record is None or not record.is_complete or not self._still_valid(record):
            discard_record(self._path)
            self._state = SessionState.INVALID
            return False

        self._record = record
        self._state = SessionState.VALID
        self._transport.attach_session(self)
        LOGGER.debug("Reusing stored bunq session %s", record.id)
        return True

    def _still_valid(self, record: SessionRecord) -> bool:
        try:
            self._transport.request("GET", f"/user/{record.user_id}", token=record.token, retry_on_auth=False)
        except SyncError as exc:
            LOGGER.info("Stored bunq session rejected (%s), a new one is needed", exc)
            return False
        return True
