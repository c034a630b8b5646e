"""Aptos chain adapter for CCTP transfers.

- Leg 1 from Aptos: ``deposit_for_burn`` of USDC held in the primary store
- Leg 2 to Aptos: ``handle_receive_message_entry``
- Optional fee payer wallet sponsoring gas, signing after the user

Transaction expiry is the node's ledger time plus a TTL, fetched again
every time the transaction is refreshed before signing.
"""

import asyncio
import logging

import aiohttp
from aptos_sdk.authenticator import Authenticator, FeePayerAuthenticator
from aptos_sdk.transactions import FeePayerRawTransaction, RawTransaction, SignedTransaction

from xchain_defi.aptos.address import format_account_address, parse_account_address
from xchain_defi.aptos.cctp import build_deposit_for_burn_payload, build_receive_message_payload
from xchain_defi.aptos.rest import AptosApiError, AptosRest
from xchain_defi.cctp.attestation import CCTPAttestation
from xchain_defi.cctp.address import mint_recipient_for
from xchain_defi.cctp.chain import BuiltTransaction, ChainAdapter, ChainKind, TransactionReceipt, TransactionStatus
from xchain_defi.cctp.config import DEFAULT_BRIDGE_CONFIG, BridgeConfig
from xchain_defi.cctp.constants import APTOS_USDC, CCTP_DOMAIN_APTOS
from xchain_defi.cctp.errors import SubmissionError
from xchain_defi.provider.fallback import RetryableHTTPStatus
from xchain_defi.utils import format_token_amount

logger = logging.getLogger(__name__)


class AptosChain(ChainAdapter):
    """Aptos mainnet, CCTP domain 9."""

    kind = ChainKind.aptos

    domain = CCTP_DOMAIN_APTOS

    def __init__(self, rest: AptosRest, config: BridgeConfig = DEFAULT_BRIDGE_CONFIG, sponsor=None, usdc: str = APTOS_USDC):
        """
        :param sponsor:
            :py:class:`xchain_defi.wallet.Wallet` paying gas for user transactions.
            Sponsored transactions use the short TTL.
        """
        self.rest = rest
        self.config = config
        self.sponsor = sponsor
        self.usdc = usdc

    def __repr__(self):
        return f"<AptosChain {self.rest!r}>"

    def normalise_address(self, address: str) -> str:
        return format_account_address(parse_account_address(address))

    def to_bytes32(self, address: str) -> bytes:
        return parse_account_address(address).address

    def from_bytes32(self, raw: bytes) -> str:
        return format_account_address(parse_account_address(raw))

    def mint_recipient_for(self, owner: str) -> bytes:
        return mint_recipient_for(owner, self.kind)

    def _build(self, description: str, signer: str, payload) -> BuiltTransaction:
        return BuiltTransaction(
            chain=self.kind,
            description=description,
            signer=self.normalise_address(signer),
            sponsor=self.sponsor.get_address() if self.sponsor else None,
            build_args={"payload": payload},
        )

    async def build_burn(self, owner: str, amount: int, destination_domain: int, mint_recipient: bytes, event_rent_payer=None) -> BuiltTransaction:
        assert event_rent_payer is None, "Aptos burns do not use an event rent payer"
        payload = build_deposit_for_burn_payload(amount, destination_domain, mint_recipient, self.usdc)
        logger.info(
            "Prepared Aptos deposit_for_burn: amount=%s, destination_domain=%d, mint_recipient=%s",
            amount,
            destination_domain,
            mint_recipient.hex(),
        )
        tx = self._build(f"Burn {format_token_amount(amount, 6)} USDC on Aptos", owner, payload)
        await self.refresh(tx)
        return tx

    async def build_mint(self, payer: str, recipient_owner: str, attestation: CCTPAttestation) -> BuiltTransaction:
        payload = build_receive_message_payload(
            attestation.message,
            attestation.attestation,
            gas_drop_to=parse_account_address(recipient_owner),
            gas_amount=self.config.aptos_gas_drop_amount,
        )
        logger.info(
            "Prepared Aptos handle_receive_message_entry: source_domain=%d, nonce=%d, recipient=%s",
            attestation.decoded.source_domain,
            attestation.decoded.nonce,
            recipient_owner,
        )
        tx = self._build(f"Mint {format_token_amount(attestation.decoded.amount, 6)} USDC on Aptos", payer, payload)
        await self.refresh(tx)
        return tx

    async def refresh(self, tx: BuiltTransaction):
        """Rebuild with the current sequence number and ledger time based expiry."""
        ledger = await self.rest.get_ledger_info()
        sequence_number = await self.rest.get_sequence_number(tx.signer)
        ttl = self.config.aptos_sponsored_ttl if tx.sponsor else self.config.aptos_ttl
        tx.expires_at = ledger.ledger_timestamp_seconds + ttl

        raw = RawTransaction(
            parse_account_address(tx.signer),
            sequence_number,
            tx.build_args["payload"],
            self.config.aptos_max_gas_amount,
            self.config.aptos_gas_unit_price,
            tx.expires_at,
            ledger.chain_id,
        )
        tx.build_args["raw"] = raw
        if tx.sponsor:
            tx.payload = FeePayerRawTransaction(raw, [], parse_account_address(tx.sponsor))
        else:
            tx.payload = raw
        tx.signatures.clear()
        logger.debug("Aptos transaction %s expires at %d, sequence number %d", tx.description, tx.expires_at, sequence_number)

    def sign_locally(self, tx: BuiltTransaction):
        # All Aptos signers are wallets
        return

    def _assemble(self, tx: BuiltTransaction) -> SignedTransaction:
        sender_auth = tx.signatures[tx.signer]
        if tx.sponsor:
            authenticator = Authenticator(
                FeePayerAuthenticator(
                    sender_auth,
                    [],
                    (parse_account_address(tx.sponsor), tx.signatures[tx.sponsor]),
                )
            )
        else:
            authenticator = Authenticator(sender_auth.authenticator)
        return SignedTransaction(tx.build_args["raw"], authenticator)

    async def submit(self, tx: BuiltTransaction) -> str:
        if not tx.is_fully_signed():
            raise SubmissionError(f"Transaction {tx.description} is missing signatures")

        signed = self._assemble(tx)
        try:
            tx_hash = await self.rest.submit_bcs_transaction(signed.bytes())
        except (AptosApiError, RetryableHTTPStatus, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SubmissionError(f"Aptos rejected {tx.description}: {e}") from e

        logger.info("Submitted Aptos transaction %s: %s", tx_hash, tx.description)
        return tx_hash

    async def get_status(self, tx_id: str) -> TransactionReceipt:
        data = await self.rest.get_transaction_by_hash(tx_id)
        if data is None or data.get("type") == "pending_transaction":
            return TransactionReceipt(tx_id, TransactionStatus.pending)
        if data.get("success"):
            return TransactionReceipt(tx_id, TransactionStatus.confirmed)
        return TransactionReceipt(tx_id, TransactionStatus.failed, error=data.get("vm_status"))
