"""Classify parsed Solana transactions against the monitored address.

Classification is a pure function of the raw transaction, the monitored
address, the stable-mint allowlist and the price passed in, so the same
signature always classifies to the same record.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from prometheus_client import Counter
from solders.pubkey import Pubkey

from presale_monitor.chain.models import (
    ParsedInstruction,
    ParsedTransaction,
    TokenBalance,
    lamports_to_sol,
)
from presale_monitor.monitor.models import (
    TokenKind,
    Transaction,
    TransactionKind,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

EPOCH = datetime.fromtimestamp(0, tz=UTC)

CLASSIFICATION_FAILURES = Counter(
    "presale_classification_failures_total",
    "Transactions that could not be classified",
)


class ClassificationError(Exception):
    """Raised when a raw transaction is too malformed to classify."""


def _parse_pubkey(value: Any) -> Pubkey | None:
    if not isinstance(value, str):
        return None
    try:
        return Pubkey.from_string(value)
    except Exception:
        return None


def _sign(value: Decimal | int) -> int:
    return (value > 0) - (value < 0)


class TransactionClassifier:
    """Turn a ParsedTransaction into a Transaction relative to one address.

    Stablecoin transfers are recognised by exact public-key equality of the
    transfer mint with an allowlisted mint. Invalid mint strings never match.

    Example:
        ```python
        classifier = TransactionClassifier(address, [USDC_MINT])
        tx = classifier.classify(parsed, price=Decimal("150"))
        if tx is not None and tx.is_successful_deposit:
            ...
        ```
    """

    def __init__(self, address: str, stable_mints: Iterable[str]) -> None:
        """Initialize the classifier.

        Args:
            address: Monitored address.
            stable_mints: Stablecoin mint allowlist.

        Raises:
            ValueError: If the address or an allowlisted mint is not a public key.
        """
        self._address = address
        self._stable_mints = frozenset(Pubkey.from_string(mint) for mint in stable_mints)

    @property
    def address(self) -> str:
        """Monitored address."""
        return self._address

    def is_stable_mint(self, mint: Any) -> bool:
        """Return True if mint is exactly one of the allowlisted mints."""
        key = _parse_pubkey(mint)
        return key is not None and key in self._stable_mints

    def classify(self, raw: ParsedTransaction, price: Decimal) -> Transaction | None:
        """Classify one transaction.

        Args:
            raw: Parsed transaction from the chain client.
            price: SOL/USD price used to value native amounts.

        Returns:
            The classified transaction, or None if the monitored address is
            not among the transaction's account keys.

        Raises:
            ClassificationError: If the payload is inconsistent.
        """
        try:
            index = raw.account_keys.index(self._address)
        except ValueError:
            return None

        try:
            return self._classify(raw, index, price)
        except (IndexError, KeyError, TypeError, ValueError, InvalidOperation) as e:
            CLASSIFICATION_FAILURES.inc()
            raise ClassificationError(f"Cannot classify {raw.signature}: {e}") from e

    def _classify(self, raw: ParsedTransaction, index: int, price: Decimal) -> Transaction:
        delta = raw.post_balances[index] - raw.pre_balances[index]
        native_kind = self._kind_from_sign(_sign(delta))

        status = TransactionStatus.FAILED if raw.error is not None else TransactionStatus.SUCCESS
        occurred_at = raw.block_time or EPOCH

        stable = self._find_stable_transfer(raw)
        if stable is not None:
            kind, amount, sender, receiver = stable
            if kind is TransactionKind.UNRELATED:
                kind = native_kind
            return Transaction(
                signature=raw.signature,
                kind=kind,
                token=TokenKind.STABLE,
                amount=amount,
                usd_value=amount,
                counterparty_from=sender,
                counterparty_to=receiver,
                occurred_at=occurred_at,
                status=status,
                price_usd=None,
                slot=raw.slot,
            )

        amount = lamports_to_sol(abs(delta))
        if native_kind is TransactionKind.DEPOSIT:
            sender, receiver = raw.fee_payer, self._address
        elif native_kind is TransactionKind.WITHDRAWAL:
            sender = self._address
            receiver = raw.account_keys[1] if len(raw.account_keys) > 1 else None
        else:
            sender, receiver = raw.fee_payer, None

        return Transaction(
            signature=raw.signature,
            kind=native_kind,
            token=TokenKind.NATIVE,
            amount=amount,
            usd_value=amount * price,
            counterparty_from=sender,
            counterparty_to=receiver,
            occurred_at=occurred_at,
            status=status,
            price_usd=price,
            slot=raw.slot,
        )

    @staticmethod
    def _kind_from_sign(sign: int) -> TransactionKind:
        if sign > 0:
            return TransactionKind.DEPOSIT
        if sign < 0:
            return TransactionKind.WITHDRAWAL
        return TransactionKind.UNRELATED

    def _token_balance_for(self, raw: ParsedTransaction, account: Any) -> TokenBalance | None:
        if not isinstance(account, str) or account not in raw.account_keys:
            return None
        account_index = raw.account_keys.index(account)
        for balance in (*raw.post_token_balances, *raw.pre_token_balances):
            if balance.account_index == account_index:
                return balance
        return None

    def _transfer_mint(self, raw: ParsedTransaction, ix: ParsedInstruction) -> str | None:
        mint = ix.info.get("mint")
        if mint:
            return str(mint)
        # Plain "transfer" carries no mint; resolve it from the token balances
        for account in (ix.info.get("source"), ix.info.get("destination")):
            balance = self._token_balance_for(raw, account)
            if balance is not None:
                return balance.mint
        return None

    def _transfer_amount(self, raw: ParsedTransaction, ix: ParsedInstruction) -> Decimal:
        token_amount = ix.info.get("tokenAmount")
        if isinstance(token_amount, dict):
            ui_amount = token_amount.get("uiAmountString")
            if ui_amount is not None:
                return Decimal(str(ui_amount))
            return Decimal(str(token_amount["amount"])).scaleb(-int(token_amount["decimals"]))

        raw_amount = Decimal(str(ix.info["amount"]))
        for account in (ix.info.get("source"), ix.info.get("destination")):
            balance = self._token_balance_for(raw, account)
            if balance is not None:
                return raw_amount.scaleb(-balance.decimals)
        raise ValueError(f"no decimals known for transfer in {raw.signature}")

    def _owned_token_accounts(self, raw: ParsedTransaction) -> set[str]:
        indexes = {
            b.account_index
            for b in (*raw.pre_token_balances, *raw.post_token_balances)
            if b.owner == self._address
        }
        return {raw.account_keys[i] for i in indexes if i < len(raw.account_keys)}

    def _owner_token_delta(self, raw: ParsedTransaction, mint: str) -> int:
        def total(balances: tuple[TokenBalance, ...]) -> int:
            return sum(b.amount for b in balances if b.owner == self._address and b.mint == mint)

        return total(raw.post_token_balances) - total(raw.pre_token_balances)

    def _find_stable_transfer(
        self, raw: ParsedTransaction
    ) -> tuple[TransactionKind, Decimal, str | None, str | None] | None:
        """Find an allowlisted stablecoin transfer, preferring one touching our accounts."""
        owned = self._owned_token_accounts(raw)
        candidates: list[tuple[ParsedInstruction, str]] = []
        for ix in (*raw.instructions, *raw.inner_instructions):
            if not ix.is_token_transfer:
                continue
            mint = self._transfer_mint(raw, ix)
            if mint is not None and self.is_stable_mint(mint):
                candidates.append((ix, mint))

        if not candidates:
            return None

        ix, mint = next(
            (
                (ix, mint)
                for ix, mint in candidates
                if ix.info.get("source") in owned or ix.info.get("destination") in owned
            ),
            candidates[0],
        )

        amount = self._transfer_amount(raw, ix)
        sender = ix.info.get("authority") or ix.info.get("multisigAuthority") or ix.info.get(
            "source"
        )
        destination = ix.info.get("destination")
        destination_balance = self._token_balance_for(raw, destination)
        receiver = (
            destination_balance.owner
            if destination_balance is not None and destination_balance.owner
            else destination
        )

        if destination in owned:
            kind = TransactionKind.DEPOSIT
        elif ix.info.get("source") in owned:
            kind = TransactionKind.WITHDRAWAL
        else:
            kind = self._kind_from_sign(_sign(self._owner_token_delta(raw, mint)))

        return kind, amount, sender, receiver
