"""Solana chain adapter for CCTP transfers.

- Leg 1 from Solana: ``deposit_for_burn`` from the owner's USDC token account
- Leg 2 to Solana: create the recipient token account if needed, then ``receive_message``
- Ephemeral keypairs can pay the CCTP event account rent and get swept back afterwards
"""

import asyncio
import logging

import aiohttp
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from xchain_defi.cctp.attestation import CCTPAttestation
from xchain_defi.cctp.address import mint_recipient_for
from xchain_defi.cctp.chain import BuiltTransaction, ChainAdapter, ChainKind, TransactionReceipt, TransactionStatus
from xchain_defi.cctp.constants import CCTP_DOMAIN_SOLANA
from xchain_defi.cctp.errors import SubmissionError, ValidationError
from xchain_defi.provider.fallback import JsonRpcError, RetryableHTTPStatus
from xchain_defi.solana.address import get_associated_token_address, parse_pubkey
from xchain_defi.solana.cctp import (
    USDC_MINT,
    build_create_associated_token_account_idempotent,
    build_deposit_for_burn_instruction,
    build_receive_message_instruction,
)
from xchain_defi.solana.rpc import SolanaRpc
from xchain_defi.utils import format_token_amount

logger = logging.getLogger(__name__)


class SolanaChain(ChainAdapter):
    """Solana mainnet, CCTP domain 5."""

    kind = ChainKind.solana

    domain = CCTP_DOMAIN_SOLANA

    supports_ephemeral_accounts = True

    def __init__(self, rpc: SolanaRpc, mint: Pubkey = USDC_MINT):
        self.rpc = rpc
        self.mint = mint

    def __repr__(self):
        return f"<SolanaChain {self.rpc!r}>"

    def normalise_address(self, address: str) -> str:
        return str(parse_pubkey(address))

    def to_bytes32(self, address: str) -> bytes:
        return bytes(parse_pubkey(address))

    def from_bytes32(self, raw: bytes) -> str:
        return str(parse_pubkey(raw))

    def mint_recipient_for(self, owner: str) -> bytes:
        """USDC associated token account of a wallet.

        :raises ValidationError:
            ``owner`` is off-curve, i.e. a token account or other PDA, not a wallet.
        """
        if not parse_pubkey(owner).is_on_curve():
            raise ValidationError(f"{owner} is not a wallet address, pass the owner instead of a token account")
        return mint_recipient_for(owner, self.kind, str(self.mint))

    def _build(self, description: str, signer: str, instructions: list, local_signers: list) -> BuiltTransaction:
        return BuiltTransaction(
            chain=self.kind,
            description=description,
            signer=signer,
            local_signers=local_signers,
            build_args={"instructions": instructions, "payer": parse_pubkey(signer)},
        )

    async def build_burn(
        self,
        owner: str,
        amount: int,
        destination_domain: int,
        mint_recipient: bytes,
        event_rent_payer: Keypair | None = None,
    ) -> BuiltTransaction:
        owner_key = parse_pubkey(owner)

        # Fresh account holding the emitted message, signs the burn
        event_data = Keypair()
        local_signers = [event_data]

        if event_rent_payer is not None:
            rent_payer = event_rent_payer.pubkey()
            local_signers.insert(0, event_rent_payer)
        else:
            rent_payer = owner_key

        instruction = build_deposit_for_burn_instruction(
            owner=owner_key,
            event_rent_payer=rent_payer,
            burn_token_account=get_associated_token_address(owner_key, self.mint),
            message_sent_event_data=event_data.pubkey(),
            amount=amount,
            destination_domain=destination_domain,
            mint_recipient=mint_recipient,
            mint=self.mint,
        )
        logger.info(
            "Prepared Solana deposit_for_burn: amount=%s, destination_domain=%d, mint_recipient=%s, event_data=%s",
            amount,
            destination_domain,
            mint_recipient.hex(),
            event_data.pubkey(),
        )
        tx = self._build(f"Burn {format_token_amount(amount, 6)} USDC on Solana", owner, [instruction], local_signers)
        await self.refresh(tx)
        return tx

    async def build_mint(self, payer: str, recipient_owner: str, attestation: CCTPAttestation) -> BuiltTransaction:
        payer_key = parse_pubkey(payer)
        owner_key = parse_pubkey(recipient_owner)
        token_account = get_associated_token_address(owner_key, self.mint)

        instructions = [
            build_create_associated_token_account_idempotent(payer_key, owner_key, token_account, self.mint),
            build_receive_message_instruction(
                payer=payer_key,
                recipient_token_account=token_account,
                message=attestation.decoded,
                message_bytes=attestation.message,
                attestation=attestation.attestation,
                mint=self.mint,
            ),
        ]
        logger.info(
            "Prepared Solana receive_message: source_domain=%d, nonce=%d, token_account=%s",
            attestation.decoded.source_domain,
            attestation.decoded.nonce,
            token_account,
        )
        tx = self._build(f"Mint {format_token_amount(attestation.decoded.amount, 6)} USDC on Solana", payer, instructions, [])
        await self.refresh(tx)
        return tx

    async def refresh(self, tx: BuiltTransaction):
        blockhash = await self.rpc.get_latest_blockhash()
        tx.payload = Message.new_with_blockhash(tx.build_args["instructions"], tx.build_args["payer"], blockhash)
        tx.signatures.clear()

    def sign_locally(self, tx: BuiltTransaction):
        data = bytes(tx.payload)
        for keypair in tx.local_signers:
            tx.signatures[str(keypair.pubkey())] = keypair.sign_message(data)

    async def submit(self, tx: BuiltTransaction) -> str:
        message: Message = tx.payload
        signer_keys = message.account_keys[: message.header.num_required_signatures]
        missing = [str(k) for k in signer_keys if str(k) not in tx.signatures]
        if missing:
            raise SubmissionError(f"Transaction {tx.description} is missing signatures from {missing}")

        signed = Transaction.populate(message, [tx.signatures[str(k)] for k in signer_keys])
        try:
            signature = await self.rpc.send_transaction(bytes(signed))
        except (JsonRpcError, RetryableHTTPStatus, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SubmissionError(f"Solana rejected {tx.description}: {e}") from e

        logger.info("Submitted Solana transaction %s: %s", signature, tx.description)
        return signature

    async def get_status(self, tx_id: str) -> TransactionReceipt:
        status = await self.rpc.get_signature_status(tx_id)
        if status is None:
            return TransactionReceipt(tx_id, TransactionStatus.pending)
        if status.err is not None:
            return TransactionReceipt(tx_id, TransactionStatus.failed, error=str(status.err))
        if status.is_confirmed:
            return TransactionReceipt(tx_id, TransactionStatus.confirmed)
        return TransactionReceipt(tx_id, TransactionStatus.pending)

    def create_ephemeral_account(self) -> tuple[str, Keypair]:
        keypair = Keypair()
        return str(keypair.pubkey()), keypair

    async def build_native_transfer(self, payer: str, recipient: str, amount: int) -> BuiltTransaction:
        instruction = transfer(TransferParams(from_pubkey=parse_pubkey(payer), to_pubkey=parse_pubkey(recipient), lamports=amount))
        tx = self._build(f"Fund {recipient} with {amount} lamports", payer, [instruction], [])
        await self.refresh(tx)
        return tx

    async def build_refund(self, refunds: list[tuple[Keypair, int]], fee_payer: str) -> BuiltTransaction:
        destination = parse_pubkey(fee_payer)
        instructions = [transfer(TransferParams(from_pubkey=keypair.pubkey(), to_pubkey=destination, lamports=amount)) for keypair, amount in refunds]
        total = sum(amount for _, amount in refunds)
        tx = self._build(f"Refund {total} lamports from {len(refunds)} ephemeral accounts", fee_payer, instructions, [k for k, _ in refunds])
        await self.refresh(tx)
        return tx

    async def get_balance(self, address: str) -> int:
        return await self.rpc.get_balance(address)

    async def get_minimum_balance(self) -> int:
        return await self.rpc.get_minimum_balance_for_rent_exemption(0)

    def export_secret(self, secret: Keypair) -> str:
        """Base-58 64 byte secret key, loadable with ``Keypair.from_base58_string``."""
        return str(secret)
