"""Replays bunq payments into Firefly III, once per payment."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence

import requests

from bunq_sync.bunq_models import MonetaryAccount, Payment, PaymentPage
from bunq_sync.errors import SyncError
from bunq_sync.firefly_client import (
    ASSET,
    DEFAULT_ASSET_ROLE,
    DEPOSIT,
    EXPENSE,
    IBAN_FIELD,
    NAME_FIELD,
    REVENUE,
    TRANSFER,
    WITHDRAWAL,
    LedgerAccount,
    LedgerTransaction,
)
from bunq_sync.ignore_rules import IgnoreRule, should_ignore

LOGGER = logging.getLogger(__name__)

EMPTY_DESCRIPTION = "(no description)"

# Failures of a single account or payment that must not stop the run.
UNIT_ERRORS = (SyncError, requests.RequestException)


class BankSource(Protocol):
    def list_monetary_accounts(self) -> List[MonetaryAccount]:
        ...

    def list_payments(self, account_id: int, *, older_id: Optional[int] = None) -> PaymentPage:
        ...


class Ledger(Protocol):
    def find_asset_account(self, iban: str) -> Optional[LedgerAccount]:
        ...

    def find_or_create_asset_account(self, iban: str, name: str) -> LedgerAccount:
        ...

    def find_own_account(self, iban: str) -> Optional[LedgerAccount]:
        ...

    def find_account(self, query: str, *, field: str, account_type: str) -> Optional[LedgerAccount]:
        ...

    def create_account(self, *, name: str, account_type: str, iban: Optional[str] = None) -> LedgerAccount:
        ...

    def transaction_exists(self, external_id: str, account_number: str) -> bool:
        ...

    def create_transaction(self, transaction: LedgerTransaction) -> str:
        ...


@dataclass
class SyncReport:
    accounts_processed: int = 0
    accounts_skipped: int = 0
    created: int = 0
    already_present: int = 0
    ignored: int = 0
    failed: int = 0

    @property
    def has_failures(self) -> bool:
        return bool(self.failed or self.accounts_skipped)

    def summary(self) -> str:
        return (
            f"{self.accounts_processed} account(s) synced, {self.accounts_skipped} skipped; "
            f"{self.created} transaction(s) created, {self.already_present} already present, "
            f"{self.ignored} ignored, {self.failed} failed"
        )


class SyncEngine:
    """Walks each bunq account's payments from newest to oldest down to a cutoff.

    Every payment becomes at most one Firefly transaction: before creating
    one, the ledger is searched for a transaction carrying the payment id as
    its external id. Running twice over the same payments creates nothing the
    second time.
    """

    def __init__(
        self,
        *,
        bank: BankSource,
        ledger: Ledger,
        ignore_rules: Sequence[IgnoreRule] = (),
        dry_run: bool = False,
    ) -> None:
        self._bank = bank
        self._ledger = ledger
        self._ignore_rules = list(ignore_rules)
        self._dry_run = dry_run

    def run(self, cutoff: datetime) -> SyncReport:
        report = SyncReport()
        cutoff = cutoff.replace(tzinfo=None)
        for account in self._bank.list_monetary_accounts():
            self._sync_account(account, cutoff, report)
        LOGGER.info("Sync complete: %s", report.summary())
        return report

    def _sync_account(self, account: MonetaryAccount, cutoff: datetime, report: SyncReport) -> None:
        iban = account.iban()
        if not iban:
            LOGGER.error("bunq account %s (%s) has no IBAN, skipping it", account.id, account.name)
            report.accounts_skipped += 1
            return

        try:
            asset_account = self._resolve_asset_account(iban, account.name)
        except UNIT_ERRORS:
            LOGGER.exception("Cannot resolve Firefly asset account for %s, skipping it", iban)
            report.accounts_skipped += 1
            return

        LOGGER.info("Syncing bunq account %s (%s) into Firefly account %s", account.id, iban, asset_account.id)
        older_id: Optional[int] = None
        while True:
            try:
                page = self._bank.list_payments(account.id, older_id=older_id)
            except UNIT_ERRORS:
                LOGGER.exception("Cannot fetch payments for %s older than %s, skipping the rest", iban, older_id)
                report.failed += 1
                break
            if page.is_empty:
                break

            report.failed += len(page.malformed)
            reached_cutoff = self._process_page(page.payments, iban, asset_account, cutoff, report)
            if reached_cutoff:
                break

            oldest_id = page.oldest_id
            if oldest_id is None:
                LOGGER.warning("No payment on the page for %s carries an id, stopping", iban)
                break
            if older_id is not None and oldest_id >= older_id:
                LOGGER.warning("Payment cursor for %s did not move past %s, stopping", iban, older_id)
                break
            older_id = oldest_id

        report.accounts_processed += 1

    def _process_page(
        self,
        payments: Iterable[Payment],
        iban: str,
        asset_account: LedgerAccount,
        cutoff: datetime,
        report: SyncReport,
    ) -> bool:
        """Handle one page in order; return True once the cutoff is reached."""

        for payment in payments:
            if payment.created <= cutoff:
                LOGGER.info("Reached payment %s from %s, at or before the cutoff %s", payment.id, payment.created, cutoff)
                return True
            if should_ignore(payment, self._ignore_rules):
                LOGGER.info("Ignoring payment %s (%s) due to ignore rules", payment.id, payment.description)
                report.ignored += 1
                continue
            try:
                if self._ledger.transaction_exists(str(payment.id), iban):
                    LOGGER.debug("Payment %s already in Firefly", payment.id)
                    report.already_present += 1
                    continue
                transaction = self._build_transaction(payment, asset_account)
                if self._dry_run:
                    LOGGER.info("Dry-run: would create %s", _describe(transaction))
                else:
                    transaction_id = self._ledger.create_transaction(transaction)
                    LOGGER.info("Created Firefly transaction %s for payment %s", transaction_id, payment.id)
                report.created += 1
            except UNIT_ERRORS:
                LOGGER.exception("Failed to import payment %s", payment.id)
                report.failed += 1
        return False

    def _build_transaction(self, payment: Payment, asset_account: LedgerAccount) -> LedgerTransaction:
        withdrawal = payment.is_withdrawal
        counterparty_asset = self._ledger.find_own_account(payment.counterparty_iban)

        if counterparty_asset is not None:
            kind = TRANSFER
            counterparty = counterparty_asset
        else:
            kind = WITHDRAWAL if withdrawal else DEPOSIT
            counterparty = self._resolve_counterparty(payment, EXPENSE if withdrawal else REVENUE)

        if withdrawal:
            source, destination = asset_account, counterparty
        else:
            source, destination = counterparty, asset_account

        return LedgerTransaction(
            type=kind,
            date=payment.created,
            amount=payment.absolute_amount,
            currency_code=payment.currency,
            description=payment.description.strip() or EMPTY_DESCRIPTION,
            source_id=source.id,
            destination_id=destination.id,
            external_id=str(payment.id),
            notes=f"Imported from bunq payment {payment.id} created at {payment.created.isoformat()}",
        )

    def _resolve_asset_account(self, iban: str, name: str) -> LedgerAccount:
        if not self._dry_run:
            return self._ledger.find_or_create_asset_account(iban, name)
        existing = self._ledger.find_asset_account(iban)
        if existing is not None:
            return existing
        LOGGER.info("Dry-run: would create asset account %s (%s)", name, iban)
        return LedgerAccount(id=None, name=name, type=ASSET, role=DEFAULT_ASSET_ROLE, iban=iban)

    def _resolve_counterparty(self, payment: Payment, account_type: str) -> LedgerAccount:
        iban = payment.counterparty_iban
        name = payment.counterparty_name.strip()

        account = self._ledger.find_account(iban, field=IBAN_FIELD, account_type=account_type)
        if account is None:
            account = self._ledger.find_account(name, field=NAME_FIELD, account_type=account_type)
        if account is not None:
            return account

        display_name = name or iban or "Unknown counterparty"
        if self._dry_run:
            LOGGER.info("Dry-run: would create %s account %s", account_type, display_name)
            return LedgerAccount(id=None, name=display_name, type=account_type, iban=iban or None)
        return self._ledger.create_account(name=display_name, account_type=account_type, iban=iban or None)


def _describe(transaction: LedgerTransaction) -> str:
    return (
        f"{transaction.type} of {transaction.amount} {transaction.currency_code} "
        f"on {transaction.date.date().isoformat()} from {transaction.source_id or 'new account'} "
        f"to {transaction.destination_id or 'new account'} ({transaction.description})"
    )
