"""Client utilities for interacting with the Firefly III API."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import requests

from bunq_sync.errors import ProtocolError, UpstreamError

LOGGER = logging.getLogger(__name__)

ASSET = "asset"
EXPENSE = "expense"
REVENUE = "revenue"
DEFAULT_ASSET_ROLE = "defaultAsset"

IBAN_FIELD = "iban"
NAME_FIELD = "name"

WITHDRAWAL = "withdrawal"
DEPOSIT = "deposit"
TRANSFER = "transfer"


@dataclass(frozen=True)
class LedgerAccount:
    id: Optional[str]
    name: str
    type: str
    role: Optional[str] = None
    iban: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "LedgerAccount":
        attributes = payload.get("attributes") or {}
        return cls(
            id=str(payload["id"]),
            name=attributes.get("name") or "",
            type=attributes.get("type", ""),
            role=attributes.get("account_role"),
            iban=attributes.get("iban"),
        )


@dataclass(frozen=True)
class LedgerTransaction:
    """One split of a Firefly III transaction."""

    type: str
    date: datetime
    amount: str
    currency_code: str
    description: str
    source_id: Optional[str]
    destination_id: Optional[str]
    external_id: str
    notes: str = ""

    def to_split(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "date": self.date.isoformat(),
            "amount": self.amount,
            "description": self.description,
            "currency_code": self.currency_code,
            "source_id": self.source_id,
            "destination_id": self.destination_id,
            "notes": self.notes,
            "external_id": self.external_id,
        }


class FireflyClient:
    """Small JSON client for the Firefly III accounts and transactions API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_token: str,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._session = session or requests.Session()
        self._timeout = timeout

    def search_accounts(self, query: str, *, field: str, account_type: str, page: int = 1) -> List[LedgerAccount]:
        payload = self._request(
            "GET",
            "/v1/search/accounts",
            params={"query": query, "field": field, "type": account_type, "page": page},
        )
        return [LedgerAccount.from_payload(item) for item in payload.get("data", [])]

    def find_account(self, query: str, *, field: str, account_type: str) -> Optional[LedgerAccount]:
        if not query:
            return None
        # Firefly searches by substring; only an exact hit identifies the account.
        for account in self.search_accounts(query, field=field, account_type=account_type):
            if _matches(account, query, field):
                return account
        return None

    def create_account(
        self,
        *,
        name: str,
        account_type: str,
        iban: Optional[str] = None,
        role: Optional[str] = None,
        notes: str = "",
    ) -> LedgerAccount:
        body: Dict[str, Any] = {"name": name, "type": account_type}
        if iban:
            body["iban"] = iban
        if role:
            body["account_role"] = role
        if notes:
            body["notes"] = notes
        payload = self._request("POST", "/v1/accounts", json_body=body)
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ProtocolError("Firefly account response has no data")
        account = LedgerAccount.from_payload(data)
        LOGGER.info("Created Firefly %s account %s (%s)", account_type, account.id, name)
        return account

    def find_asset_account(self, iban: str) -> Optional[LedgerAccount]:
        if not iban:
            return None
        for account in self.search_accounts(iban, field=IBAN_FIELD, account_type=ASSET):
            if account.role == DEFAULT_ASSET_ROLE and _matches(account, iban, IBAN_FIELD):
                return account
        return None

    def find_own_account(self, iban: str) -> Optional[LedgerAccount]:
        """Any asset account with this IBAN, whatever its role; payments to it are transfers."""

        return self.find_account(iban, field=IBAN_FIELD, account_type=ASSET)

    def find_or_create_asset_account(self, iban: str, name: str) -> LedgerAccount:
        account = self.find_asset_account(iban)
        if account is not None:
            LOGGER.info("Found existing Firefly account %s for %s", account.id, iban)
            return account
        return self.create_account(name=name, account_type=ASSET, iban=iban, role=DEFAULT_ASSET_ROLE)

    def transaction_exists(self, external_id: str, account_number: str) -> bool:
        query = f"external_id_is:{external_id}"
        if account_number:
            query += f" account_nr_is:{account_number}"
        payload = self._request("GET", "/v1/search/transactions", params={"query": query, "page": 1})
        pagination = (payload.get("meta") or {}).get("pagination") or {}
        total = pagination.get("total")
        if total is None:
            total = len(payload.get("data", []))
        return int(total) > 0

    def create_transaction(self, transaction: LedgerTransaction) -> str:
        payload = self._request(
            "POST",
            "/v1/transactions",
            json_body={"error_if_duplicate_hash": False, "transactions": [transaction.to_split()]},
        )
        data = payload.get("data") or {}
        return str(data.get("id", ""))

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._api_token}",
            "X-Trace-Id": str(uuid.uuid4()),
            "Accept": "application/json",
        }
        LOGGER.debug("Firefly request %s %s params=%s", method, url, params)
        response = self._session.request(
            method,
            url,
            headers=headers,
            params=params,
            json=json_body,
            timeout=self._timeout,
        )
        LOGGER.debug("Firefly response %s %s status=%s", method, path, response.status_code)
        if not 200 <= response.status_code <= 299:
            LOGGER.warning("Received error %s from Firefly for %s %s", response.status_code, method, path)
            raise UpstreamError(
                f"Firefly returned {response.status_code} for {method} {path}",
                status_code=response.status_code,
                body=response.content or b"",
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProtocolError(f"Firefly returned invalid JSON for {method} {path}") from exc


def normalize_iban(value: Optional[str]) -> str:
    return "".join((value or "").split()).upper()


def _matches(account: LedgerAccount, query: str, field: str) -> bool:
    if field == IBAN_FIELD:
        return bool(account.iban) and normalize_iban(account.iban) == normalize_iban(query)
    return account.name.strip().casefold() == query.strip().casefold()
