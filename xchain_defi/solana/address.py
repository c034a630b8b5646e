"""Solana address derivation.

Program derived addresses (PDAs) are off-curve addresses computed from seeds
and an owning program id. The canonical address is found by trying bump seeds
from 255 down to 0 and taking the first hash which is *not* a valid ed25519
point, so nobody can hold a private key for it.

- `Solana PDA documentation <https://solana.com/docs/core/pda>`_
"""

import hashlib
import logging
from typing import Sequence

from solders.pubkey import Pubkey

from xchain_defi.cctp.constants import SOLANA_ASSOCIATED_TOKEN_PROGRAM, SOLANA_TOKEN_PROGRAM
from xchain_defi.cctp.errors import DerivationError, ValidationError

logger = logging.getLogger(__name__)

#: Domain separator appended to every PDA hash preimage
PDA_MARKER = b"ProgramDerivedAddress"

#: Maximum number of seeds, including the bump
MAX_SEEDS = 16

#: Maximum length of a single seed
MAX_SEED_LENGTH = 32

TOKEN_PROGRAM_ID = Pubkey.from_string(SOLANA_TOKEN_PROGRAM)

ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string(SOLANA_ASSOCIATED_TOKEN_PROGRAM)


def parse_pubkey(address: str | bytes | Pubkey) -> Pubkey:
    """Parse a base-58 address or raw 32 bytes.

    :raises ValidationError:
        Not a Solana address.
    """
    if isinstance(address, Pubkey):
        return address

    if isinstance(address, (bytes, bytearray)):
        if len(address) != 32:
            raise ValidationError(f"Solana address must be 32 bytes, got {len(address)}")
        return Pubkey(bytes(address))

    try:
        return Pubkey.from_string(address.strip())
    except (ValueError, TypeError, AttributeError) as e:
        raise ValidationError(f"Not a valid Solana address: {address!r}") from e


def create_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Pubkey:
    """Hash seeds into a program address.

    The bump seed, if any, must already be the last element of ``seeds``.

    :raises DerivationError:
        Seed limits are exceeded, or the hash lands on the ed25519 curve.
    """
    if len(seeds) > MAX_SEEDS:
        raise DerivationError(f"At most {MAX_SEEDS} seeds allowed, got {len(seeds)}")

    hasher = hashlib.sha256()
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise DerivationError(f"Seed longer than {MAX_SEED_LENGTH} bytes: {seed!r}")
        hasher.update(seed)
    hasher.update(bytes(program_id))
    hasher.update(PDA_MARKER)

    candidate = Pubkey(hasher.digest())
    if candidate.is_on_curve():
        raise DerivationError("Derived address is on the ed25519 curve")
    return candidate


def find_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> tuple[Pubkey, int]:
    """Find the canonical program derived address and its bump.

    :param seeds:
        Raw seed bytes, without the bump.

    :param program_id:
        Owning program.

    :return:
        Tuple (address, bump)

    :raises DerivationError:
        No bump in 255...0 produces an off-curve address, or the seeds are too long.
    """
    seeds = [bytes(s) for s in seeds]

    # Leave room for the bump seed
    if len(seeds) > MAX_SEEDS - 1:
        raise DerivationError(f"At most {MAX_SEEDS - 1} seeds allowed, got {len(seeds)}")

    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise DerivationError(f"Seed longer than {MAX_SEED_LENGTH} bytes: {seed!r}")

    for bump in range(255, -1, -1):
        try:
            return create_program_address([*seeds, bytes([bump])], program_id), bump
        except DerivationError:
            # On curve, try the next bump
            continue

    raise DerivationError(f"Unable to find a viable program address bump for program {program_id}")


def get_associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    """Associated token account of ``owner`` for ``mint``.

    This is where SPL tokens for a wallet live, and what CCTP must mint to.
    """
    address, _ = find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address
