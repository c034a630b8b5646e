"""Aptos address handling.

Aptos account addresses are 32 bytes, written as ``0x`` prefixed hex.
Object addresses are derived with a single SHA3-256 over
``source ‖ seed ‖ scheme``, no bump search involved.

- `AIP-40 address format <https://github.com/aptos-foundation/AIPs/blob/main/aips/aip-40.md>`_
- `Object address derivation <https://aptos.dev/build/smart-contracts/object>`_
"""

import hashlib

from aptos_sdk.account_address import AccountAddress

from xchain_defi.cctp.errors import ValidationError

#: Object address derivation scheme for objects created from a user address,
#: used by primary fungible stores
DERIVE_OBJECT_ADDRESS_FROM_OBJECT = 0xFC

#: Object address derivation scheme for named objects
DERIVE_OBJECT_ADDRESS_FROM_SEED = 0xFE


def parse_account_address(address: str | bytes | AccountAddress) -> AccountAddress:
    """Parse an Aptos address in long or short hex form, or raw bytes.

    :raises ValidationError:
        Not an Aptos address.
    """
    if isinstance(address, AccountAddress):
        return address

    if isinstance(address, (bytes, bytearray)):
        if len(address) != 32:
            raise ValidationError(f"Aptos address must be 32 bytes, got {len(address)}")
        return AccountAddress(bytes(address))

    if not isinstance(address, str) or not address.strip().lower().startswith("0x"):
        raise ValidationError(f"Aptos address must be 0x prefixed hex: {address!r}")

    # Relaxed AIP-40 parsing accepts both SHORT and LONG forms
    try:
        return AccountAddress.from_str_relaxed(address.strip().lower())
    except (RuntimeError, ValueError) as e:
        raise ValidationError(f"Not a valid Aptos address: {address!r}") from e


def format_account_address(address: AccountAddress | bytes) -> str:
    """Canonical AIP-40 text.

    Special addresses like ``0x1`` in SHORT form, everything else
    ``0x`` + 64 hex digits.
    """
    if not isinstance(address, AccountAddress):
        address = AccountAddress(bytes(address))
    return str(address)


def derive_object_address(source: AccountAddress, seed: bytes, scheme: int) -> AccountAddress:
    hasher = hashlib.sha3_256()
    hasher.update(source.address)
    hasher.update(seed)
    hasher.update(bytes([scheme]))
    return AccountAddress(hasher.digest())


def derive_primary_store_address(owner: AccountAddress, metadata: AccountAddress) -> AccountAddress:
    """Primary fungible store of ``owner`` for the asset ``metadata``.

    Aptos USDC is a fungible asset, so this is where an account's USDC balance sits.
    """
    return derive_object_address(owner, metadata.address, DERIVE_OBJECT_ADDRESS_FROM_OBJECT)


def derive_named_object_address(creator: AccountAddress, seed: bytes) -> AccountAddress:
    """Named object address created with ``object::create_named_object``."""
    return derive_object_address(creator, seed, DERIVE_OBJECT_ADDRESS_FROM_SEED)
