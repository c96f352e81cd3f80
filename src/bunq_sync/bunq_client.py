"""Client utilities for reading accounts and payments from bunq."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlencode

import requests

from bunq_sync.bunq_models import Installation, MonetaryAccount, PaymentPage, unwrap_response
from bunq_sync.config import SyncConfig
from bunq_sync.installation import DeviceRegistrar, InstallationManager
from bunq_sync.keychain import KeyChain
from bunq_sync.session import SessionManager
from bunq_sync.transport import SignedTransport

LOGGER = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class BootstrapContext:
    """Everything established once at start-up, shared read-only afterwards."""

    keychain: KeyChain
    installation: Installation
    config: SyncConfig


class BunqClient:
    """Minimal reader for the bunq endpoints the sync needs."""

    def __init__(
        self,
        *,
        transport: SignedTransport,
        session: SessionManager,
        context: Optional[BootstrapContext] = None,
        page_size: int = 50,
    ) -> None:
        self._transport = transport
        self._session = session
        self._context = context
        self._page_size = max(1, min(page_size, MAX_PAGE_SIZE))

    @property
    def context(self) -> Optional[BootstrapContext]:
        return self._context

    @classmethod
    def bootstrap(cls, config: SyncConfig, *, http_session: Optional[requests.Session] = None) -> "BunqClient":
        """Load or provision keys, installation, device and session, in that order."""

        keychain = KeyChain(
            private_key_path=config.private_key_path,
            public_key_path=config.public_key_path,
        )
        transport = SignedTransport(
            base_url=config.bunq_api_base_url,
            user_agent=config.user_agent,
            keychain=keychain,
            max_retries=config.max_retries,
            timeout=config.request_timeout,
            session=http_session,
        )
        installation = InstallationManager(
            transport=transport,
            keychain=keychain,
            path=config.installation_path,
        ).ensure_installation()
        DeviceRegistrar(
            transport=transport,
            path=config.device_server_path,
            description=config.user_agent,
            secret=config.bunq_api_key,
            permitted_ips=config.permitted_ips,
        ).ensure_device_registered(installation)
        session = SessionManager(
            transport=transport,
            installation=installation,
            api_key=config.bunq_api_key,
            path=config.session_server_path,
        )
        context = BootstrapContext(keychain=keychain, installation=installation, config=config)
        return cls(transport=transport, session=session, context=context, page_size=config.page_size)

    def list_monetary_accounts(self) -> List[MonetaryAccount]:
        user_id = self._session.get_user_id()
        body = self._transport.request("GET", f"/user/{user_id}/monetary-account-bank")
        accounts = [
            MonetaryAccount.from_payload(item["MonetaryAccountBank"])
            for item in unwrap_response(body)
            if "MonetaryAccountBank" in item
        ]
        LOGGER.info("Loaded %d bunq accounts", len(accounts))
        return accounts

    def list_payments(self, account_id: int, *, older_id: Optional[int] = None) -> PaymentPage:
        """Return one page of payments, newest first, older than ``older_id`` when given."""

        user_id = self._session.get_user_id()
        params = {"count": self._page_size}
        if older_id:
            params["older_id"] = older_id
        path = f"/user/{user_id}/monetary-account/{account_id}/payment?{urlencode(params)}"
        body = self._transport.request("GET", path)
        page = PaymentPage.from_items(item["Payment"] for item in unwrap_response(body) if "Payment" in item)
        LOGGER.debug(
            "bunq returned %d payments (%d malformed) for account %s older than %s",
            len(page.payments),
            len(page.malformed),
            account_id,
            older_id,
        )
        return page
