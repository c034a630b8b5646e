"""Circle CCTP v1 programs on Solana.

Account derivation and instruction building for the
TokenMessengerMinter (TMM) and MessageTransmitter (MT) Anchor programs.

Every protocol account is a program derived address with a single,
documented seed convention. Numeric seeds, like domains and nonces,
are their decimal string form.

- `Circle Solana programs <https://github.com/circlefin/solana-cctp-contracts>`_
"""

import hashlib
import logging
import struct
from dataclasses import dataclass

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from xchain_defi.cctp.constants import (
    SOLANA_MESSAGE_TRANSMITTER,
    SOLANA_SYSTEM_PROGRAM,
    SOLANA_TOKEN_MESSENGER_MINTER,
    SOLANA_USDC_MINT,
    SOLANA_USED_NONCES_BUCKET,
    SOLANA_USED_NONCES_DELIMITER_DOMAIN,
)
from xchain_defi.cctp.message import CCTPMessage
from xchain_defi.solana.address import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID, find_program_address

logger = logging.getLogger(__name__)

TOKEN_MESSENGER_MINTER_PROGRAM_ID = Pubkey.from_string(SOLANA_TOKEN_MESSENGER_MINTER)

MESSAGE_TRANSMITTER_PROGRAM_ID = Pubkey.from_string(SOLANA_MESSAGE_TRANSMITTER)

SYSTEM_PROGRAM_ID = Pubkey.from_string(SOLANA_SYSTEM_PROGRAM)

USDC_MINT = Pubkey.from_string(SOLANA_USDC_MINT)


def anchor_discriminator(instruction_name: str) -> bytes:
    """First 8 bytes of ``sha256("global:<name>")``."""
    return hashlib.sha256(f"global:{instruction_name}".encode()).digest()[:8]


def _pda(seeds: list[bytes], program_id: Pubkey) -> Pubkey:
    address, _ = find_program_address(seeds, program_id)
    return address


def get_message_transmitter_state() -> Pubkey:
    return _pda([b"message_transmitter"], MESSAGE_TRANSMITTER_PROGRAM_ID)


def get_message_transmitter_authority(receiver: Pubkey = TOKEN_MESSENGER_MINTER_PROGRAM_ID) -> Pubkey:
    """MT signer PDA used when calling into the receiver program."""
    return _pda([b"message_transmitter_authority", bytes(receiver)], MESSAGE_TRANSMITTER_PROGRAM_ID)


def get_event_authority(program_id: Pubkey) -> Pubkey:
    """Anchor ``emit_cpi!`` event authority of a program."""
    return _pda([b"__event_authority"], program_id)


def get_token_messenger() -> Pubkey:
    return _pda([b"token_messenger"], TOKEN_MESSENGER_MINTER_PROGRAM_ID)


def get_token_minter() -> Pubkey:
    return _pda([b"token_minter"], TOKEN_MESSENGER_MINTER_PROGRAM_ID)


def get_sender_authority() -> Pubkey:
    return _pda([b"sender_authority"], TOKEN_MESSENGER_MINTER_PROGRAM_ID)


def get_local_token(mint: Pubkey = USDC_MINT) -> Pubkey:
    return _pda([b"local_token", bytes(mint)], TOKEN_MESSENGER_MINTER_PROGRAM_ID)


def get_custody_token_account(mint: Pubkey = USDC_MINT) -> Pubkey:
    return _pda([b"custody", bytes(mint)], TOKEN_MESSENGER_MINTER_PROGRAM_ID)


def get_remote_token_messenger(remote_domain: int) -> Pubkey:
    return _pda([b"remote_token_messenger", str(remote_domain).encode()], TOKEN_MESSENGER_MINTER_PROGRAM_ID)


def get_token_pair(remote_domain: int, remote_token: bytes) -> Pubkey:
    """Mapping of a remote chain's burn token to the local mint.

    :param remote_token:
        32 byte ``burnToken`` from the message.
    """
    assert len(remote_token) == 32, f"Remote token must be 32 bytes, got {len(remote_token)}"
    return _pda([b"token_pair", str(remote_domain).encode(), bytes(remote_token)], TOKEN_MESSENGER_MINTER_PROGRAM_ID)


def get_first_nonce(nonce: int) -> int:
    """First nonce of the ``used_nonces`` bucket containing ``nonce``."""
    assert nonce >= 1, f"CCTP nonces start at 1, got {nonce}"
    return (nonce - 1) // SOLANA_USED_NONCES_BUCKET * SOLANA_USED_NONCES_BUCKET + 1


def get_used_nonces(source_domain: int, nonce: int) -> Pubkey:
    """Replay protection account for a source domain nonce bucket."""
    seeds = [b"used_nonces", str(source_domain).encode()]
    if source_domain >= SOLANA_USED_NONCES_DELIMITER_DOMAIN:
        seeds.append(b"-")
    seeds.append(str(get_first_nonce(nonce)).encode())
    return _pda(seeds, MESSAGE_TRANSMITTER_PROGRAM_ID)


@dataclass(slots=True, frozen=True)
class ReceiveMessageAccounts:
    """All PDAs ``receive_message`` touches for one message."""

    authority: Pubkey
    message_transmitter: Pubkey
    used_nonces: Pubkey
    message_transmitter_event_authority: Pubkey
    token_messenger: Pubkey
    remote_token_messenger: Pubkey
    token_minter: Pubkey
    local_token: Pubkey
    token_pair: Pubkey
    custody: Pubkey
    token_messenger_event_authority: Pubkey

    @classmethod
    def derive(cls, message: CCTPMessage, mint: Pubkey = USDC_MINT) -> "ReceiveMessageAccounts":
        return cls(
            authority=get_message_transmitter_authority(),
            message_transmitter=get_message_transmitter_state(),
            used_nonces=get_used_nonces(message.source_domain, message.nonce),
            message_transmitter_event_authority=get_event_authority(MESSAGE_TRANSMITTER_PROGRAM_ID),
            token_messenger=get_token_messenger(),
            remote_token_messenger=get_remote_token_messenger(message.source_domain),
            token_minter=get_token_minter(),
            local_token=get_local_token(mint),
            token_pair=get_token_pair(message.source_domain, message.body.burn_token),
            custody=get_custody_token_account(mint),
            token_messenger_event_authority=get_event_authority(TOKEN_MESSENGER_MINTER_PROGRAM_ID),
        )


def encode_deposit_for_burn_data(amount: int, destination_domain: int, mint_recipient: bytes) -> bytes:
    """Anchor data of ``deposit_for_burn``.

    Borsh ``DepositForBurnParams { amount: u64, destination_domain: u32, mint_recipient: Pubkey }``.
    """
    assert len(mint_recipient) == 32, f"Mint recipient must be 32 bytes, got {len(mint_recipient)}"
    return anchor_discriminator("deposit_for_burn") + struct.pack("<QI", amount, destination_domain) + bytes(mint_recipient)


def encode_receive_message_data(message: bytes, attestation: bytes) -> bytes:
    """Anchor data of ``receive_message``, two Borsh ``Vec<u8>``."""
    return anchor_discriminator("receive_message") + struct.pack("<I", len(message)) + bytes(message) + struct.pack("<I", len(attestation)) + bytes(attestation)


def build_deposit_for_burn_instruction(
    owner: Pubkey,
    event_rent_payer: Pubkey,
    burn_token_account: Pubkey,
    message_sent_event_data: Pubkey,
    amount: int,
    destination_domain: int,
    mint_recipient: bytes,
    mint: Pubkey = USDC_MINT,
) -> Instruction:
    """Burn USDC from ``burn_token_account`` towards ``destination_domain``.

    :param message_sent_event_data:
        Fresh keypair account which stores the emitted message, must sign.
    """
    accounts = [
        AccountMeta(owner, is_signer=True, is_writable=False),
        AccountMeta(event_rent_payer, is_signer=True, is_writable=True),
        AccountMeta(get_sender_authority(), is_signer=False, is_writable=False),
        AccountMeta(burn_token_account, is_signer=False, is_writable=True),
        AccountMeta(get_message_transmitter_state(), is_signer=False, is_writable=True),
        AccountMeta(get_token_messenger(), is_signer=False, is_writable=False),
        AccountMeta(get_remote_token_messenger(destination_domain), is_signer=False, is_writable=False),
        AccountMeta(get_token_minter(), is_signer=False, is_writable=False),
        AccountMeta(get_local_token(mint), is_signer=False, is_writable=True),
        AccountMeta(mint, is_signer=False, is_writable=True),
        AccountMeta(message_sent_event_data, is_signer=True, is_writable=True),
        AccountMeta(MESSAGE_TRANSMITTER_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_MESSENGER_MINTER_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(get_event_authority(TOKEN_MESSENGER_MINTER_PROGRAM_ID), is_signer=False, is_writable=False),
        AccountMeta(TOKEN_MESSENGER_MINTER_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = encode_deposit_for_burn_data(amount, destination_domain, mint_recipient)
    return Instruction(TOKEN_MESSENGER_MINTER_PROGRAM_ID, data, accounts)


def build_receive_message_instruction(
    payer: Pubkey,
    recipient_token_account: Pubkey,
    message: CCTPMessage,
    message_bytes: bytes,
    attestation: bytes,
    mint: Pubkey = USDC_MINT,
) -> Instruction:
    """Mint USDC for an attested message.

    The first nine accounts belong to MessageTransmitter, the rest are
    forwarded to TokenMessengerMinter ``handle_receive_message``.
    """
    pdas = ReceiveMessageAccounts.derive(message, mint)
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        # caller
        AccountMeta(payer, is_signer=True, is_writable=False),
        AccountMeta(pdas.authority, is_signer=False, is_writable=False),
        AccountMeta(pdas.message_transmitter, is_signer=False, is_writable=True),
        AccountMeta(pdas.used_nonces, is_signer=False, is_writable=True),
        # receiver
        AccountMeta(TOKEN_MESSENGER_MINTER_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pdas.message_transmitter_event_authority, is_signer=False, is_writable=False),
        AccountMeta(MESSAGE_TRANSMITTER_PROGRAM_ID, is_signer=False, is_writable=False),
        # Remaining accounts for the receiver
        AccountMeta(pdas.token_messenger, is_signer=False, is_writable=False),
        AccountMeta(pdas.remote_token_messenger, is_signer=False, is_writable=False),
        AccountMeta(pdas.token_minter, is_signer=False, is_writable=True),
        AccountMeta(pdas.local_token, is_signer=False, is_writable=True),
        AccountMeta(pdas.token_pair, is_signer=False, is_writable=False),
        AccountMeta(recipient_token_account, is_signer=False, is_writable=True),
        AccountMeta(pdas.custody, is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pdas.token_messenger_event_authority, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_MESSENGER_MINTER_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = encode_receive_message_data(message_bytes, attestation)
    return Instruction(MESSAGE_TRANSMITTER_PROGRAM_ID, data, accounts)


def build_create_associated_token_account_idempotent(payer: Pubkey, owner: Pubkey, associated_account: Pubkey, mint: Pubkey = USDC_MINT) -> Instruction:
    """Create the recipient token account unless it exists."""
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(associated_account, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    # 1 = CreateIdempotent
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, bytes([1]), accounts)
