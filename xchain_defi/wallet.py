"""Wallet capability interface.

The bridge asks wallets for signatures, nothing else. Browser or hardware
wallets implement :py:class:`Wallet`. Local keys for fee payers,
scripts and tests are provided as :py:class:`SolanaKeypairWallet` and
:py:class:`AptosAccountWallet`.

Wallets are not reentrant: wrap them in :py:class:`SerialisedWallet`
so only one signature request is outstanding at a time.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from aptos_sdk.account import Account
from solders.keypair import Keypair

from xchain_defi.aptos.address import format_account_address
from xchain_defi.cctp.chain import BuiltTransaction, ChainKind
from xchain_defi.cctp.errors import SigningRejectedError

logger = logging.getLogger(__name__)


class Wallet(ABC):
    """Something that can sign transactions for one account."""

    #: Chain the account lives on
    chain_kind: ChainKind

    @abstractmethod
    def get_address(self) -> str:
        """Canonical native address."""

    @abstractmethod
    async def sign_transaction(self, tx: BuiltTransaction) -> Any:
        """Sign the payload of ``tx``.

        :return:
            Chain native signature object

        :raises SigningRejectedError:
            The user declined.
        """

    async def sign_message(self, data: bytes) -> bytes:
        """Sign arbitrary bytes, only for wallets deriving keys across chains."""
        raise NotImplementedError(f"{self.__class__.__name__} does not sign messages")


class SerialisedWallet(Wallet):
    """Allow one outstanding signature request per wallet."""

    def __init__(self, wallet: Wallet):
        self.wallet = wallet
        self.chain_kind = wallet.chain_kind
        self.lock = asyncio.Lock()

    def __repr__(self):
        return f"<SerialisedWallet {self.wallet!r}>"

    def get_address(self) -> str:
        return self.wallet.get_address()

    async def sign_transaction(self, tx: BuiltTransaction) -> Any:
        async with self.lock:
            return await self.wallet.sign_transaction(tx)

    async def sign_message(self, data: bytes) -> bytes:
        async with self.lock:
            return await self.wallet.sign_message(data)


class SolanaKeypairWallet(Wallet):
    """Local Solana keypair."""

    chain_kind = ChainKind.solana

    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    def __repr__(self):
        return f"<SolanaKeypairWallet {self.get_address()}>"

    def get_address(self) -> str:
        return str(self.keypair.pubkey())

    async def sign_transaction(self, tx: BuiltTransaction) -> Any:
        if tx.chain != ChainKind.solana:
            raise SigningRejectedError(f"Cannot sign {tx.chain.value} transaction with a Solana key")
        return self.keypair.sign_message(bytes(tx.payload))

    async def sign_message(self, data: bytes) -> bytes:
        return bytes(self.keypair.sign_message(data))


class AptosAccountWallet(Wallet):
    """Local Aptos ed25519 account."""

    chain_kind = ChainKind.aptos

    def __init__(self, account: Account):
        self.account = account

    def __repr__(self):
        return f"<AptosAccountWallet {self.get_address()}>"

    def get_address(self) -> str:
        return format_account_address(self.account.address())

    async def sign_transaction(self, tx: BuiltTransaction) -> Any:
        if tx.chain != ChainKind.aptos:
            raise SigningRejectedError(f"Cannot sign {tx.chain.value} transaction with an Aptos key")
        # Returns AccountAuthenticator
        return tx.payload.sign(self.account.private_key)

    async def sign_message(self, data: bytes) -> bytes:
        return self.account.sign(data).data()
