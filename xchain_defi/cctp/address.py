"""Cross-chain address conversion and derivation.

CCTP messages carry every address as 32 raw bytes. This module converts
between that form and the native text form of each chain, and derives the
token accounts a mint must be routed to.

Example::

    from xchain_defi.cctp.address import derive_token_account, to_universal_bytes32
    from xchain_defi.cctp.chain import ChainKind
    from xchain_defi.cctp.constants import SOLANA_USDC_MINT

    ata = derive_token_account(owner, SOLANA_USDC_MINT, ChainKind.solana)
    mint_recipient = to_universal_bytes32(ata, ChainKind.solana)
"""

from typing import Sequence

from solders.pubkey import Pubkey

from xchain_defi.aptos.address import (
    derive_named_object_address,
    derive_primary_store_address,
    format_account_address,
    parse_account_address,
)
from xchain_defi.cctp.chain import ChainKind
from xchain_defi.cctp.constants import APTOS_USDC, SOLANA_USDC_MINT
from xchain_defi.cctp.errors import DerivationError, ValidationError
from xchain_defi.solana.address import find_program_address, get_associated_token_address, parse_pubkey


def to_universal_bytes32(native_address: str, chain_kind: ChainKind) -> bytes:
    """Native address text to the 32 byte CCTP form.

    :raises ValidationError:
        Not a valid address for the chain.
    """
    match chain_kind:
        case ChainKind.solana:
            return bytes(parse_pubkey(native_address))
        case ChainKind.aptos:
            return parse_account_address(native_address).address
        case _:
            raise ValidationError(f"Unsupported chain kind {chain_kind}")


def from_universal_bytes32(raw: bytes, chain_kind: ChainKind) -> str:
    """32 byte CCTP form to canonical native address text.

    Solana addresses come back base-58, Aptos addresses in AIP-40 form.
    """
    if len(raw) != 32:
        raise ValidationError(f"Universal address must be 32 bytes, got {len(raw)}")

    match chain_kind:
        case ChainKind.solana:
            return str(Pubkey(bytes(raw)))
        case ChainKind.aptos:
            return format_account_address(bytes(raw))
        case _:
            raise ValidationError(f"Unsupported chain kind {chain_kind}")


def derive_token_account(owner: str, token_mint: str, chain_kind: ChainKind) -> str:
    """Where ``owner`` holds ``token_mint`` on the given chain.

    - Solana: associated token account, a program derived address
    - Aptos: primary fungible store, a single hash object address
    """
    match chain_kind:
        case ChainKind.solana:
            return str(get_associated_token_address(parse_pubkey(owner), parse_pubkey(token_mint)))
        case ChainKind.aptos:
            store = derive_primary_store_address(parse_account_address(owner), parse_account_address(token_mint))
            return format_account_address(store)
        case _:
            raise ValidationError(f"Unsupported chain kind {chain_kind}")


def derive_program_address(
    seeds: Sequence[bytes],
    program_id: str,
    chain_kind: ChainKind = ChainKind.solana,
) -> tuple[str, int | None]:
    """Derive a program owned address from seeds.

    On Aptos this is a named object address and there is no bump.

    :return:
        Tuple (address, bump)

    :raises DerivationError:
        No valid address within the bump search bound, or too many or too long seeds.
    """
    match chain_kind:
        case ChainKind.solana:
            address, bump = find_program_address(seeds, parse_pubkey(program_id))
            return str(address), bump
        case ChainKind.aptos:
            address = derive_named_object_address(parse_account_address(program_id), b"".join(seeds))
            return format_account_address(address), None
        case _:
            raise DerivationError(f"Unsupported chain kind {chain_kind}")


def mint_recipient_for(owner: str, chain_kind: ChainKind, token: str | None = None) -> bytes:
    """The ``mintRecipient`` a transfer to ``owner`` must carry.

    Solana CCTP mints into an SPL token account, so the recipient is the
    owner's associated token account, never the wallet key itself.
    Aptos CCTP deposits into the primary store of the account, so the
    recipient is the account address.

    :param token:
        Token minted on the destination. Native USDC if not given.
    """
    match chain_kind:
        case ChainKind.solana:
            token = token or usdc_address(chain_kind)
            return to_universal_bytes32(derive_token_account(owner, token, ChainKind.solana), ChainKind.solana)
        case ChainKind.aptos:
            return to_universal_bytes32(owner, ChainKind.aptos)
        case _:
            raise ValidationError(f"Unsupported chain kind {chain_kind}")


def usdc_address(chain_kind: ChainKind) -> str:
    """Native USDC on the chain."""
    match chain_kind:
        case ChainKind.solana:
            return SOLANA_USDC_MINT
        case ChainKind.aptos:
            return APTOS_USDC
        case _:
            raise ValidationError(f"Unsupported chain kind {chain_kind}")
