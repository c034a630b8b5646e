"""Solana program derived addresses and CCTP instructions.

Expected addresses are accounts used by real mainnet ``receive_message`` transactions.
"""

import hashlib

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from xchain_defi.cctp.attestation import CCTPAttestation
from xchain_defi.cctp.constants import APTOS_USDC, CCTP_DOMAIN_APTOS, CCTP_DOMAIN_SOLANA
from xchain_defi.cctp.errors import DerivationError, ValidationError
from xchain_defi.cctp.message import decode_message
from xchain_defi.cctp.steps import collect_signatures
from xchain_defi.solana.adapter import SolanaChain
from xchain_defi.solana.address import find_program_address, get_associated_token_address
from xchain_defi.solana.cctp import (
    MESSAGE_TRANSMITTER_PROGRAM_ID,
    TOKEN_MESSENGER_MINTER_PROGRAM_ID,
    USDC_MINT,
    anchor_discriminator,
    build_deposit_for_burn_instruction,
    build_receive_message_instruction,
    encode_deposit_for_burn_data,
    encode_receive_message_data,
    get_event_authority,
    get_first_nonce,
    get_message_transmitter_authority,
    get_remote_token_messenger,
    get_token_pair,
    get_used_nonces,
)
from xchain_defi.wallet import SolanaKeypairWallet

from tests.cctp.conftest import make_burn_message


def test_message_transmitter_authority():
    assert str(get_message_transmitter_authority()) == "CFtn7PC5NsaFAuG65LwvhcGVD2MiqSpMJ7yvpyhsgJwW"


def test_event_authorities():
    assert str(get_event_authority(MESSAGE_TRANSMITTER_PROGRAM_ID)) == "6mH8scevHQJsyyp1qxu8kyAapHuzEE67mtjFDJZjSbQW"
    assert str(get_event_authority(TOKEN_MESSENGER_MINTER_PROGRAM_ID)) == "CNfZLeeL4RUxwfPnjA3tLiQt4y43jp4V7bMpga673jf9"


def test_aptos_remote_token_messenger():
    assert str(get_remote_token_messenger(CCTP_DOMAIN_APTOS)) == "3CTbq3SF9gekPHiJwLsyivfVbuaRFAQwQ6eQgtNy8nP1"


def test_aptos_usdc_token_pair():
    aptos_usdc = bytes.fromhex(APTOS_USDC[2:])
    assert str(get_token_pair(CCTP_DOMAIN_APTOS, aptos_usdc)) == "C7XDQkHdr7omXt3Z4u3AuwQx9Za4AswzifnmKaoRhvLp"


def test_pda_is_off_curve_and_deterministic():
    owner = Keypair().pubkey()
    first = get_associated_token_address(owner, USDC_MINT)
    second = get_associated_token_address(owner, USDC_MINT)
    assert first == second
    assert not first.is_on_curve()
    assert first != get_associated_token_address(Keypair().pubkey(), USDC_MINT)


def test_seed_limits():
    with pytest.raises(DerivationError):
        find_program_address([b"x" * 33], TOKEN_MESSENGER_MINTER_PROGRAM_ID)

    with pytest.raises(DerivationError):
        find_program_address([b"x"] * 16, TOKEN_MESSENGER_MINTER_PROGRAM_ID)

    address, bump = find_program_address([b"x"] * 15, TOKEN_MESSENGER_MINTER_PROGRAM_ID)
    assert 0 <= bump <= 255


@pytest.mark.parametrize(
    "nonce, first",
    [(1, 1), (6400, 1), (6401, 6401), (12800, 6401), (12801, 12801)],
)
def test_used_nonces_bucket(nonce, first):
    assert get_first_nonce(nonce) == first


def test_used_nonces_accounts():
    assert get_used_nonces(CCTP_DOMAIN_APTOS, 5) == get_used_nonces(CCTP_DOMAIN_APTOS, 6400)
    assert get_used_nonces(CCTP_DOMAIN_APTOS, 5) != get_used_nonces(CCTP_DOMAIN_APTOS, 6401)

    # Domains from 11 upwards separate domain and nonce with a dash
    expected, _ = find_program_address([b"used_nonces", b"11", b"-", b"1"], MESSAGE_TRANSMITTER_PROGRAM_ID)
    assert get_used_nonces(11, 1) == expected
    expected, _ = find_program_address([b"used_nonces", b"9", b"1"], MESSAGE_TRANSMITTER_PROGRAM_ID)
    assert get_used_nonces(9, 1) == expected


def test_deposit_for_burn_data():
    """0.1 USDC towards Aptos, little-endian Borsh after the Anchor discriminator."""
    recipient = b"\x07" * 32
    data = encode_deposit_for_burn_data(100_000, CCTP_DOMAIN_APTOS, recipient)
    assert data[:8] == hashlib.sha256(b"global:deposit_for_burn").digest()[:8] == anchor_discriminator("deposit_for_burn")
    assert data[8:].hex() == "a086010000000000" + "09000000" + "07" * 32


def test_receive_message_data():
    data = encode_receive_message_data(b"\x01\x02", b"\x03")
    assert data[:8] == anchor_discriminator("receive_message")
    assert data[8:].hex() == "02000000" + "0102" + "01000000" + "03"


def test_deposit_for_burn_accounts():
    owner = Keypair().pubkey()
    event_data = Keypair().pubkey()
    instruction = build_deposit_for_burn_instruction(
        owner=owner,
        event_rent_payer=owner,
        burn_token_account=get_associated_token_address(owner, USDC_MINT),
        message_sent_event_data=event_data,
        amount=100_000,
        destination_domain=CCTP_DOMAIN_APTOS,
        mint_recipient=b"\x07" * 32,
    )
    assert instruction.program_id == TOKEN_MESSENGER_MINTER_PROGRAM_ID
    assert len(instruction.accounts) == 17
    assert instruction.accounts[6].pubkey == get_remote_token_messenger(CCTP_DOMAIN_APTOS)
    assert instruction.accounts[10].pubkey == event_data
    assert instruction.accounts[10].is_signer


def test_receive_message_accounts():
    owner = Keypair().pubkey()
    token_account = get_associated_token_address(owner, USDC_MINT)
    raw = make_burn_message(CCTP_DOMAIN_APTOS, CCTP_DOMAIN_SOLANA, bytes(token_account), 100_000, nonce=7000)
    message = decode_message(raw)

    instruction = build_receive_message_instruction(owner, token_account, message, raw, b"\xab" * 65)

    assert instruction.program_id == MESSAGE_TRANSMITTER_PROGRAM_ID
    assert len(instruction.accounts) == 19
    assert instruction.accounts[2].pubkey == get_message_transmitter_authority()
    assert instruction.accounts[4].pubkey == get_used_nonces(CCTP_DOMAIN_APTOS, 7000)
    assert instruction.accounts[14].pubkey == token_account


class FakeSolanaRpc:
    def __init__(self):
        self.sent: list[bytes] = []

    async def get_latest_blockhash(self) -> Hash:
        return Hash.new_unique()

    async def send_transaction(self, raw: bytes) -> str:
        self.sent.append(raw)
        return str(Transaction.from_bytes(raw).signatures[0])


def test_mint_recipient_is_token_account():
    chain = SolanaChain(FakeSolanaRpc())
    owner = Keypair().pubkey()
    assert chain.mint_recipient_for(str(owner)) == bytes(get_associated_token_address(owner, USDC_MINT))


def test_mint_recipient_known_wallet():
    """Mainnet wallet and its USDC token account, as shown by block explorers."""
    owner = Pubkey.from_string("9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM")
    assert str(get_associated_token_address(owner, USDC_MINT)) == "FGETo8T8wMcN2wCjav8VK6eh3dLk63evNDPxzLSJra8B"
    chain = SolanaChain(FakeSolanaRpc())
    assert chain.mint_recipient_for(str(owner)) == bytes(Pubkey.from_string("FGETo8T8wMcN2wCjav8VK6eh3dLk63evNDPxzLSJra8B"))


def test_mint_recipient_rejects_token_account():
    """Passing a token account instead of the wallet would route funds to an account nobody owns."""
    chain = SolanaChain(FakeSolanaRpc())
    token_account = get_associated_token_address(Keypair().pubkey(), USDC_MINT)
    with pytest.raises(ValidationError):
        chain.mint_recipient_for(str(token_account))


@pytest.mark.asyncio
async def test_burn_signed_by_wallet_and_event_account():
    rpc = FakeSolanaRpc()
    chain = SolanaChain(rpc)
    keypair = Keypair()
    wallet = SolanaKeypairWallet(keypair)

    tx = await chain.build_burn(str(keypair.pubkey()), 100_000, CCTP_DOMAIN_APTOS, b"\x07" * 32)
    await collect_signatures(chain, tx, wallet)
    tx_id = await chain.submit(tx)

    [raw] = rpc.sent
    signed = Transaction.from_bytes(raw)
    signed.verify()
    assert len(signed.signatures) == 2
    assert tx_id == str(signed.signatures[0])
    assert signed.message.account_keys[0] == keypair.pubkey()


@pytest.mark.asyncio
async def test_mint_builds_token_account_first():
    rpc = FakeSolanaRpc()
    chain = SolanaChain(rpc)
    payer = Keypair()
    recipient = Keypair().pubkey()
    token_account = get_associated_token_address(recipient, USDC_MINT)
    raw = make_burn_message(CCTP_DOMAIN_APTOS, CCTP_DOMAIN_SOLANA, bytes(token_account), 100_000)
    attestation = CCTPAttestation(message=raw, attestation=b"\xab" * 65, event_nonce=1, decoded=decode_message(raw))

    tx = await chain.build_mint(str(payer.pubkey()), str(recipient), attestation)
    await collect_signatures(chain, tx, SolanaKeypairWallet(payer))
    await chain.submit(tx)

    signed = Transaction.from_bytes(rpc.sent[0])
    signed.verify()
    programs = [signed.message.account_keys[ix.program_id_index] for ix in signed.message.instructions]
    assert programs == [Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"), MESSAGE_TRANSMITTER_PROGRAM_ID]
