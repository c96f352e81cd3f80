"""Records exchanged with the bunq API."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from bunq_sync.errors import ProtocolError
from bunq_sync.keychain import load_public_key

LOGGER = logging.getLogger(__name__)

USER_KINDS = ("UserPerson", "UserCompany", "UserApiKey")


def unwrap_response(body: bytes) -> List[Dict[str, Any]]:
    """Return the ``Response`` list of a bunq envelope."""

    try:
        payload = json.loads(body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Malformed bunq response: {exc}") from exc
    items = payload.get("Response") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise ProtocolError("bunq response has no Response list")
    return [item for item in items if isinstance(item, dict)]


def merge_items(items: Iterable[Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Merge a list of single-kind items (``{"Token": {...}}``) into one mapping by kind.

    Order does not matter; when a kind repeats, the last occurrence wins.
    """

    merged: Dict[str, Dict[str, Any]] = {}
    for item in items:
        for kind, value in item.items():
            if isinstance(value, dict):
                merged[kind] = value
    return merged


@dataclass
class Installation:
    id: Optional[int] = None
    token: Optional[str] = None
    server_public_key: Optional[str] = None
    _server_key: Optional[rsa.RSAPublicKey] = field(default=None, init=False, repr=False, compare=False)

    @classmethod
    def from_items(cls, items: Mapping[str, Dict[str, Any]]) -> "Installation":
        return cls(
            id=items.get("Id", {}).get("id"),
            token=items.get("Token", {}).get("token"),
            server_public_key=items.get("ServerPublicKey", {}).get("server_public_key"),
        )

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Installation":
        return cls(
            id=record.get("id"),
            token=record.get("token"),
            server_public_key=record.get("server_public_key"),
        )

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "token": self.token, "server_public_key": self.server_public_key}

    def server_key(self) -> rsa.RSAPublicKey:
        """Parsed server public key, used to verify signed responses."""

        if self._server_key is None:
            if not self.server_public_key:
                raise ProtocolError("Installation has no server public key")
            self._server_key = load_public_key(self.server_public_key)
        return self._server_key


@dataclass(frozen=True)
class DeviceRegistration:
    id: Optional[int] = None

    @classmethod
    def from_items(cls, items: Mapping[str, Dict[str, Any]]) -> "DeviceRegistration":
        return cls(id=items.get("Id", {}).get("id"))

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id}


@dataclass(frozen=True)
class SessionRecord:
    id: Optional[int] = None
    token: Optional[str] = None
    user_id: Optional[int] = None

    @classmethod
    def from_items(cls, items: Mapping[str, Dict[str, Any]]) -> "SessionRecord":
        user_id = None
        for kind in USER_KINDS:
            if kind in items:
                user_id = items[kind].get("id")
                break
        return cls(
            id=items.get("Id", {}).get("id"),
            token=items.get("Token", {}).get("token"),
            user_id=user_id,
        )

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "SessionRecord":
        return cls(id=record.get("id"), token=record.get("token"), user_id=record.get("user_id"))

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "token": self.token, "user_id": self.user_id}

    @property
    def is_complete(self) -> bool:
        return bool(self.token) and self.user_id is not None


@dataclass(frozen=True)
class MonetaryAccount:
    id: int
    description: str
    display_name: str
    currency: str
    status: str
    aliases: List[Dict[str, str]]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MonetaryAccount":
        if not isinstance(payload, Mapping):
            raise ProtocolError(f"Malformed bunq account item {payload!r}")
        return cls(
            id=parse_id(payload, "MonetaryAccountBank"),
            description=payload.get("description", ""),
            display_name=payload.get("display_name", ""),
            currency=payload.get("currency", ""),
            status=payload.get("status", ""),
            aliases=[alias for alias in payload.get("alias") or [] if isinstance(alias, dict)],
        )

    def iban(self) -> Optional[str]:
        for alias in self.aliases:
            if alias.get("type") == "IBAN" and alias.get("value"):
                return alias["value"]
        return None

    @property
    def name(self) -> str:
        return self.description or self.display_name or f"bunq {self.id}"


@dataclass(frozen=True)
class PaymentAlias:
    iban: str = ""
    display_name: str = ""
    country: str = ""

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "PaymentAlias":
        if not isinstance(payload, Mapping):
            payload = {}
        return cls(
            iban=payload.get("iban") or "",
            display_name=payload.get("display_name") or "",
            country=payload.get("country") or "",
        )


@dataclass(frozen=True)
class Payment:
    """A single booked payment on a bunq monetary account."""

    id: int
    created: datetime
    amount: str
    currency: str
    description: str
    type: str
    alias: PaymentAlias
    counterparty_alias: PaymentAlias

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Payment":
        if not isinstance(payload, Mapping):
            raise ProtocolError(f"Malformed bunq payment item {payload!r}")
        amount = payload.get("amount") or {}
        if not isinstance(amount, Mapping):
            raise ProtocolError(f"Payment {payload.get('id')!r} has a malformed amount")
        return cls(
            id=parse_id(payload, "Payment"),
            created=parse_timestamp(payload.get("created")),
            amount=str(amount.get("value", "0")),
            currency=str(amount.get("currency") or ""),
            description=str(payload.get("description") or ""),
            type=str(payload.get("type") or ""),
            alias=PaymentAlias.from_payload(payload.get("alias")),
            counterparty_alias=PaymentAlias.from_payload(payload.get("counterparty_alias")),
        )

    @property
    def is_withdrawal(self) -> bool:
        return self.amount.strip().startswith("-")

    @property
    def absolute_amount(self) -> str:
        try:
            return str(abs(Decimal(self.amount.strip())))
        except InvalidOperation as exc:
            raise ProtocolError(f"Payment {self.id} has an invalid amount {self.amount!r}") from exc

    @property
    def signed_amount(self) -> float:
        try:
            return float(self.amount)
        except ValueError:
            return 0.0

    @property
    def counterparty_name(self) -> str:
        return self.counterparty_alias.display_name

    @property
    def counterparty_iban(self) -> str:
        return self.counterparty_alias.iban


@dataclass
class PaymentPage:
    """One page of a payment listing.

    ``malformed`` holds the raw items that could not be parsed; ``oldest_id``
    is the smallest id among all items, parsed or not, so paging can move
    past a bad payment.
    """

    payments: List[Payment] = field(default_factory=list)
    malformed: List[Any] = field(default_factory=list)
    oldest_id: Optional[int] = None

    @classmethod
    def from_items(cls, items: Iterable[Any]) -> "PaymentPage":
        page = cls()
        ids: List[int] = []
        for item in items:
            if not isinstance(item, Mapping):
                LOGGER.error("Skipping malformed bunq payment item %r", item)
                page.malformed.append(item)
                continue
            try:
                ids.append(parse_id(item, "Payment"))
            except ProtocolError as exc:
                LOGGER.error("Skipping bunq payment item without a usable id: %s", exc)
                page.malformed.append(item)
                continue
            try:
                page.payments.append(Payment.from_payload(item))
            except ProtocolError as exc:
                LOGGER.error("Skipping malformed bunq payment %r: %s", item.get("id"), exc)
                page.malformed.append(item)
        page.oldest_id = min(ids) if ids else None
        return page

    @property
    def is_empty(self) -> bool:
        return not self.payments and not self.malformed


def parse_id(payload: Mapping[str, Any], kind: str) -> int:
    raw = payload.get("id")
    if isinstance(raw, bool):
        raise ProtocolError(f"{kind} has an invalid id {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"{kind} has an invalid id {raw!r}") from exc


def parse_timestamp(raw: Optional[str]) -> datetime:
    """Parse bunq's ``YYYY-MM-DD HH:MM:SS.ffffff`` timestamps into naive datetimes."""

    if not raw:
        raise ProtocolError("Payment without a timestamp")
    if not isinstance(raw, str):
        raise ProtocolError(f"Unparseable timestamp {raw!r}")
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ProtocolError(f"Unparseable timestamp {raw!r}") from exc
    return parsed.replace(tzinfo=None)
