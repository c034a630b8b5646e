"""Bridge configuration.

All tunables of a transfer in one place. Read from environment variables
with :py:meth:`BridgeConfig.from_env` or use :py:meth:`BridgeConfig.create_test_config`
in unit tests to get zero delays.

Environment variables:

- ``CCTP_ATTESTATION_URL``: Iris messages endpoint
- ``JSON_RPC_SOLANA``, ``JSON_RPC_SOLANA_FALLBACK``: Solana JSON-RPC nodes
- ``APTOS_NODE_URL``, ``APTOS_NODE_URL_FALLBACK``: Aptos fullnode REST ``/v1`` URLs
- ``BRIDGE_MAX_AMOUNT``: largest allowed transfer in USDC, e.g. ``10000``
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal

from xchain_defi.cctp.constants import (
    APTOS_GAS_UNIT_PRICE,
    APTOS_MAX_GAS_AMOUNT,
    APTOS_SPONSORED_TRANSACTION_TTL,
    APTOS_TRANSACTION_TTL,
    IRIS_API_BASE_URL,
    SOLANA_REFUND_FEE_BUFFER,
)

#: Public Solana mainnet RPC
DEFAULT_SOLANA_RPC = "https://api.mainnet-beta.solana.com"

#: Public Aptos mainnet fullnode
DEFAULT_APTOS_NODE = "https://fullnode.mainnet.aptoslabs.com/v1"


@dataclass(slots=True)
class AttestationPollConfig:
    """Attestation polling schedule.

    The delay before attempt ``n`` (``n >= 2``) is
    ``min(initial_delay * 2 ** (n - 1), max_delay)``.
    """

    #: How many times we ask the oracle
    max_attempts: int = 15

    #: Base delay, seconds
    initial_delay: float = 10.0

    #: Ceiling for a single delay, seconds
    max_delay: float = 60.0

    #: Fixed wait before the first attempt, seconds
    grace_period: float = 0.0

    def get_delay(self, attempt: int) -> float:
        """Seconds to wait before the given 1-based attempt."""
        if attempt <= 1:
            return self.grace_period
        return min(self.initial_delay * 2 ** (attempt - 1), self.max_delay)


@dataclass(slots=True)
class ConfirmationPollConfig:
    """Transaction finality polling, fixed delay."""

    max_attempts: int = 30

    delay: float = 2.0


@dataclass(slots=True)
class BridgeConfig:
    """Everything a :py:class:`xchain_defi.cctp.orchestrator.TransferOrchestrator` needs to know."""

    #: Iris API messages endpoint
    attestation_url: str = IRIS_API_BASE_URL

    #: Solana JSON-RPC endpoints, primary first
    solana_rpc_urls: list[str] = field(default_factory=lambda: [DEFAULT_SOLANA_RPC])

    #: Aptos REST endpoints, primary first
    aptos_node_urls: list[str] = field(default_factory=lambda: [DEFAULT_APTOS_NODE])

    attestation: AttestationPollConfig = field(default_factory=AttestationPollConfig)

    confirmation: ConfirmationPollConfig = field(default_factory=ConfirmationPollConfig)

    #: Largest transfer we accept, in USDC
    max_amount: Decimal = Decimal("1000000")

    #: Aptos transaction lifetime when the user pays gas
    aptos_ttl: int = APTOS_TRANSACTION_TTL

    #: Aptos transaction lifetime with a fee payer
    aptos_sponsored_ttl: int = APTOS_SPONSORED_TRANSACTION_TTL

    aptos_max_gas_amount: int = APTOS_MAX_GAS_AMOUNT

    aptos_gas_unit_price: int = APTOS_GAS_UNIT_PRICE

    #: APT octas dropped on the recipient by the Aptos receiver module
    aptos_gas_drop_amount: int = 0

    #: Lamports left above rent exemption when sweeping ephemeral accounts
    solana_fee_buffer: int = SOLANA_REFUND_FEE_BUFFER

    #: Fund a throwaway keypair as the CCTP event rent payer on Solana burns.
    #: Zero disables it and the user wallet pays the rent directly.
    solana_event_rent_funding: int = 0

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """Read endpoints and limits from environment variables."""
        config = cls()

        if url := os.environ.get("CCTP_ATTESTATION_URL"):
            config.attestation_url = url.rstrip("/")

        solana = [os.environ.get("JSON_RPC_SOLANA"), os.environ.get("JSON_RPC_SOLANA_FALLBACK")]
        solana = [u for u in solana if u]
        if solana:
            config.solana_rpc_urls = solana

        aptos = [os.environ.get("APTOS_NODE_URL"), os.environ.get("APTOS_NODE_URL_FALLBACK")]
        aptos = [u for u in aptos if u]
        if aptos:
            config.aptos_node_urls = aptos

        if max_amount := os.environ.get("BRIDGE_MAX_AMOUNT"):
            config.max_amount = Decimal(max_amount)

        return config

    @classmethod
    def create_test_config(cls) -> "BridgeConfig":
        """No waiting, few attempts."""
        return cls(
            attestation=AttestationPollConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0),
            confirmation=ConfirmationPollConfig(max_attempts=3, delay=0.0),
            max_amount=Decimal("1000"),
        )


#: Default configuration instance
DEFAULT_BRIDGE_CONFIG = BridgeConfig()
