"""Chain adapter interface.

The orchestrator never talks to a blockchain directly. Each supported chain
provides a :py:class:`ChainAdapter` which knows how to build CCTP burn and
mint transactions, collect signatures, submit and poll for finality.
"""

import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import aiohttp

from xchain_defi.cctp.attestation import CCTPAttestation
from xchain_defi.cctp.config import ConfirmationPollConfig
from xchain_defi.cctp.constants import EXPLORER_TRANSACTION_URLS
from xchain_defi.cctp.errors import ConfirmationTimeoutError, SubmissionError
from xchain_defi.provider.fallback import RetryableHTTPStatus

logger = logging.getLogger(__name__)

#: What a node or the network can throw at any call.
#: JSON-RPC and REST API error answers are ``ValueError`` subclasses.
NODE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, RetryableHTTPStatus, ValueError)


class ChainKind(enum.Enum):
    """Address model of a supported chain."""

    #: 32 byte ed25519 keys in base-58, SPL tokens in associated token accounts
    solana = "solana"

    #: 32 byte account addresses in hex, fungible assets in primary stores
    aptos = "aptos"


class TransactionStatus(enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    failed = "failed"


@dataclass(slots=True, frozen=True)
class TransactionReceipt:
    """What the chain tells about a submitted transaction."""

    tx_id: str

    status: TransactionStatus

    #: Chain specific error payload for failed transactions
    error: str | None = None


@dataclass(slots=True)
class BuiltTransaction:
    """An unsigned transaction travelling through the signing steps.

    ``payload`` is the chain native object the signatures commit to:
    a ``solders.message.Message`` on Solana, a raw transaction on Aptos.
    Adapters rebuild it in :py:meth:`ChainAdapter.refresh` to get a fresh
    blockhash or expiry right before signing.
    """

    chain: ChainKind

    #: Human readable description for logs
    description: str

    #: User account which must sign
    signer: str

    #: Chain native signable object
    payload: Any = None

    #: Fee payer account co-signing after the user
    sponsor: str | None = None

    #: Keys held by this process which sign last
    local_signers: list = field(default_factory=list)

    #: Account address -> chain native signature
    signatures: dict[str, Any] = field(default_factory=dict)

    #: Unix timestamp after which the chain rejects the transaction
    expires_at: int | None = None

    #: Inputs the adapter needs to rebuild ``payload``
    build_args: dict[str, Any] = field(default_factory=dict)

    def is_fully_signed(self) -> bool:
        required = {self.signer}
        if self.sponsor:
            required.add(self.sponsor)
        return required.issubset(self.signatures.keys())


class ChainAdapter(ABC):
    """One chain participating in CCTP transfers.

    Instances are registered in :py:class:`xchain_defi.cctp.registry.ProtocolRegistry`.
    """

    #: Address model
    kind: ChainKind

    #: CCTP domain id
    domain: int

    #: Optional fee payer wallet co-signing user transactions
    sponsor = None

    @abstractmethod
    def normalise_address(self, address: str) -> str:
        """Validate a native address and return its canonical text form.

        :raises ValidationError:
            Not an address of this chain.
        """

    @abstractmethod
    def to_bytes32(self, address: str) -> bytes:
        """Native address to the 32 byte CCTP form."""

    @abstractmethod
    def from_bytes32(self, raw: bytes) -> str:
        """32 byte CCTP form to the canonical native address."""

    @abstractmethod
    def mint_recipient_for(self, owner: str) -> bytes:
        """The routable USDC account of ``owner``, as 32 bytes."""

    @abstractmethod
    async def build_burn(
        self,
        owner: str,
        amount: int,
        destination_domain: int,
        mint_recipient: bytes,
        event_rent_payer: Any = None,
    ) -> BuiltTransaction:
        """Build the leg 1 ``deposit_for_burn`` transaction."""

    @abstractmethod
    async def build_mint(self, payer: str, recipient_owner: str, attestation: CCTPAttestation) -> BuiltTransaction:
        """Build the leg 2 ``receive_message`` transaction."""

    @abstractmethod
    async def refresh(self, tx: BuiltTransaction):
        """Rebuild the payload with current chain time and drop old signatures."""

    @abstractmethod
    def sign_locally(self, tx: BuiltTransaction):
        """Add signatures of keys held in ``tx.local_signers``."""

    @abstractmethod
    async def submit(self, tx: BuiltTransaction) -> str:
        """Broadcast a fully signed transaction.

        :return:
            Transaction id

        :raises SubmissionError:
            Rejected by the node.
        """

    @abstractmethod
    async def get_status(self, tx_id: str) -> TransactionReceipt:
        """Current status of a submitted transaction."""

    #
    # Ephemeral account funding, only on chains where intermediate
    # accounts need pre-funded native balance
    #

    supports_ephemeral_accounts = False

    def create_ephemeral_account(self) -> tuple[str, Any]:
        """Generate a fresh key.

        :return:
            Tuple (address, secret)
        """
        raise NotImplementedError(f"{self.kind.value} does not use ephemeral accounts")

    async def build_native_transfer(self, payer: str, recipient: str, amount: int) -> BuiltTransaction:
        raise NotImplementedError(f"{self.kind.value} does not use ephemeral accounts")

    async def build_refund(self, refunds: list[tuple[Any, int]], fee_payer: str) -> BuiltTransaction:
        """One transaction moving ``amount`` from each ephemeral ``secret`` back to ``fee_payer``."""
        raise NotImplementedError(f"{self.kind.value} does not use ephemeral accounts")

    async def get_balance(self, address: str) -> int:
        raise NotImplementedError(f"{self.kind.value} does not use ephemeral accounts")

    async def get_minimum_balance(self) -> int:
        """Smallest balance a zero data account must keep."""
        raise NotImplementedError(f"{self.kind.value} does not use ephemeral accounts")

    def export_secret(self, secret: Any) -> str:
        raise NotImplementedError(f"{self.kind.value} does not use ephemeral accounts")

    def explorer_link(self, tx_id: str) -> str:
        return EXPLORER_TRANSACTION_URLS[self.domain].format(tx_id=tx_id)


async def wait_for_confirmation(
    adapter: ChainAdapter,
    tx_id: str,
    poll: ConfirmationPollConfig,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
) -> TransactionReceipt:
    """Poll until the transaction is final, with a fixed delay.

    Node errors while polling count as a pending answer.

    :raises SubmissionError:
        The transaction failed on-chain.

    :raises ConfirmationTimeoutError:
        Still not final after the last attempt. The transaction may land later.
    """
    last_error = None
    for attempt in range(1, poll.max_attempts + 1):
        try:
            receipt = await adapter.get_status(tx_id)
        except NODE_ERRORS as e:
            last_error = e
            logger.warning("Could not read status of %s transaction %s: %s", adapter.kind.value, tx_id, e)
        else:
            match receipt.status:
                case TransactionStatus.confirmed:
                    logger.info("%s transaction %s confirmed after %d polls", adapter.kind.value, tx_id, attempt)
                    return receipt
                case TransactionStatus.failed:
                    raise SubmissionError(f"{adapter.kind.value} transaction {tx_id} failed: {receipt.error}")
                case TransactionStatus.pending:
                    logger.debug("%s transaction %s pending, poll %d/%d", adapter.kind.value, tx_id, attempt, poll.max_attempts)

        if attempt < poll.max_attempts:
            await sleep(poll.delay)

    raise ConfirmationTimeoutError(f"{adapter.kind.value} transaction {tx_id} not confirmed after {poll.max_attempts} polls, last error: {last_error}")
