"""Ephemeral account bookkeeping and refunds.

Some on-chain steps need an account that already holds native currency,
for example the payer of the CCTP event account rent on Solana.
We fund a throwaway keypair from the user's wallet for this, and sweep
whatever is left back to the user once the attempt is over.

Secrets live only in this process. They leave it only through
:py:meth:`AccountFundingLedger.export_recovery`, called on the user's request.
"""

import asyncio
import datetime
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from xchain_defi.cctp.chain import ChainKind, wait_for_confirmation
from xchain_defi.cctp.config import ConfirmationPollConfig
from xchain_defi.cctp.registry import ProtocolRegistry
from xchain_defi.cctp.steps import collect_signatures
from xchain_defi.wallet import Wallet

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FundedAccount:
    """An ephemeral account funded from the user's wallet."""

    attempt_id: str

    chain: ChainKind

    address: str

    #: Native units sent to the account
    amount: int

    #: Transaction which funded the account
    funding_tx_id: str | None

    #: Chain native secret key, needed to sign the refund
    owner_secret: Any = field(repr=False)

    refunded: bool = False


@dataclass(slots=True, frozen=True)
class FundingRecord:
    attempt_id: str

    address: str

    amount: int

    funding_tx_id: str | None

    recorded_at: datetime.datetime


@dataclass(slots=True)
class RefundResult:
    """Outcome of one sweep."""

    attempt_id: str

    #: Refund transaction, ``None`` if nothing was sent on-chain
    tx_id: str | None = None

    #: Address -> native units returned to the user
    refunded: dict[str, int] = field(default_factory=dict)

    #: Address -> why it was not swept
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def total_refunded(self) -> int:
        return sum(self.refunded.values())

    def is_empty(self) -> bool:
        return self.tx_id is None and not self.refunded


class AccountFundingLedger:
    """Track ephemeral accounts per transfer attempt and sweep them back."""

    def __init__(
        self,
        registry: ProtocolRegistry,
        confirmation: ConfirmationPollConfig | None = None,
        fee_buffer: int = 5_000,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        """
        :param fee_buffer:
            Native units left above the chain minimum balance on every account.
        """
        self.registry = registry
        self.confirmation = confirmation or ConfirmationPollConfig()
        self.fee_buffer = fee_buffer
        self.sleep = sleep
        self._accounts: dict[str, list[FundedAccount]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def fund(self, account: FundedAccount) -> FundingRecord:
        """Record an account funded for an attempt."""
        self._accounts[account.attempt_id].append(account)
        logger.info(
            "Recorded ephemeral %s account %s for attempt %s, funded with %d by %s",
            account.chain.value,
            account.address,
            account.attempt_id,
            account.amount,
            account.funding_tx_id,
        )
        return FundingRecord(
            attempt_id=account.attempt_id,
            address=account.address,
            amount=account.amount,
            funding_tx_id=account.funding_tx_id,
            recorded_at=datetime.datetime.now(datetime.timezone.utc),
        )

    def get_accounts(self, attempt_id: str) -> list[FundedAccount]:
        return list(self._accounts.get(attempt_id, []))

    def has_unrefunded(self, attempt_id: str) -> bool:
        return any(not a.refunded for a in self._accounts.get(attempt_id, []))

    async def sweep(self, attempt_id: str, fee_payer: Wallet) -> RefundResult:
        """Move excess balances of the attempt's accounts back to ``fee_payer``.

        ``refundable = balance - (minimum balance + fee buffer)``.
        Accounts with nothing refundable are closed in the books without
        an on-chain action. Calling again after success does nothing.

        :param fee_payer:
            User wallet receiving the refund and paying its fee.
        """
        result = RefundResult(attempt_id=attempt_id)

        async with self._locks[attempt_id]:
            pending = [a for a in self._accounts.get(attempt_id, []) if not a.refunded]
            if not pending:
                logger.info("Nothing to refund for attempt %s", attempt_id)
                return result

            by_chain: dict[ChainKind, list[FundedAccount]] = defaultdict(list)
            for account in pending:
                by_chain[account.chain].append(account)

            for chain, accounts in by_chain.items():
                await self._sweep_chain(chain, accounts, fee_payer, result)

        return result

    async def _sweep_chain(self, chain: ChainKind, accounts: list[FundedAccount], fee_payer: Wallet, result: RefundResult):
        adapter = self.registry.get(chain)

        # Balances are read right before building, never cached
        threshold = await adapter.get_minimum_balance() + self.fee_buffer

        refunds = []
        for account in accounts:
            balance = await adapter.get_balance(account.address)
            refundable = balance - threshold
            if refundable <= 0:
                logger.info("Ephemeral account %s holds %d, at or below %d, nothing to refund", account.address, balance, threshold)
                result.skipped[account.address] = f"balance {balance} does not exceed minimum {threshold}"
                account.refunded = True
                continue
            refunds.append((account, refundable))

        if not refunds:
            return

        tx = await adapter.build_refund([(a.owner_secret, amount) for a, amount in refunds], adapter.normalise_address(fee_payer.get_address()))
        await collect_signatures(adapter, tx, fee_payer)
        tx_id = await adapter.submit(tx)
        await wait_for_confirmation(adapter, tx_id, self.confirmation, sleep=self.sleep)

        result.tx_id = tx_id
        for account, amount in refunds:
            account.refunded = True
            result.refunded[account.address] = amount

        logger.info("Refunded %d from %d ephemeral accounts in %s", result.total_refunded, len(refunds), tx_id)

    def export_recovery(self, attempt_id: str) -> dict:
        """Dump secrets of the attempt's accounts for manual recovery.

        Only call this when the user explicitly asks for it.
        """
        accounts = self._accounts.get(attempt_id, [])
        logger.warning("Exporting %d ephemeral account secrets for attempt %s on user request", len(accounts), attempt_id)
        return {
            "attempt_id": attempt_id,
            "accounts": [
                {
                    "chain": a.chain.value,
                    "address": a.address,
                    "amount": a.amount,
                    "funding_tx_id": a.funding_tx_id,
                    "refunded": a.refunded,
                    "secret": self.registry.get(a.chain).export_secret(a.owner_secret),
                }
                for a in accounts
            ],
        }
