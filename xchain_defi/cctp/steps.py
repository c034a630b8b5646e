"""Signing steps of a built transaction.

A transaction goes through a closed set of steps before submission.
The orchestrator matches them exhaustively::

    for step in signing_steps(tx):
        match step:
            case NeedsSignature(tx=tx):
                ...
            case NeedsSponsorSignature(tx=tx):
                ...
            case Complete(tx=tx):
                ...
"""

import logging
from dataclasses import dataclass
from typing import Iterator

from xchain_defi.cctp.chain import BuiltTransaction, ChainAdapter
from xchain_defi.cctp.errors import SigningRejectedError, ValidationError
from xchain_defi.wallet import Wallet

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class NeedsSignature:
    """The user wallet must sign."""

    tx: BuiltTransaction


@dataclass(slots=True, frozen=True)
class NeedsSponsorSignature:
    """The fee payer must co-sign, always after the user."""

    tx: BuiltTransaction


@dataclass(slots=True, frozen=True)
class Complete:
    """All external signatures collected, ready for local signers and submission."""

    tx: BuiltTransaction


TransferStep = NeedsSignature | NeedsSponsorSignature | Complete


def signing_steps(tx: BuiltTransaction) -> Iterator[TransferStep]:
    """Yield the steps still missing for ``tx``."""
    if tx.signer not in tx.signatures:
        yield NeedsSignature(tx)

    if tx.sponsor and tx.sponsor not in tx.signatures:
        yield NeedsSponsorSignature(tx)

    yield Complete(tx)


async def collect_signatures(adapter: ChainAdapter, tx: BuiltTransaction, wallet: Wallet) -> BuiltTransaction:
    """Walk the signing steps: user wallet, then sponsor, then local keys.

    :raises ValidationError:
        The wallet is not the account the transaction was built for.

    :raises SigningRejectedError:
        The user or the sponsor declined.
    """
    if adapter.normalise_address(wallet.get_address()) != tx.signer:
        raise ValidationError(f"Wallet {wallet.get_address()} cannot sign for {tx.signer}")

    for step in signing_steps(tx):
        match step:
            case NeedsSignature(tx=pending):
                logger.info("Requesting user signature for %s", pending.description)
                pending.signatures[pending.signer] = await wallet.sign_transaction(pending)
            case NeedsSponsorSignature(tx=pending):
                if adapter.sponsor is None:
                    raise SigningRejectedError(f"{pending.description} needs a fee payer signature but no sponsor is configured")
                logger.info("Requesting sponsor %s signature for %s", pending.sponsor, pending.description)
                pending.signatures[pending.sponsor] = await adapter.sponsor.sign_transaction(pending)
            case Complete(tx=pending):
                adapter.sign_locally(pending)
    return tx
