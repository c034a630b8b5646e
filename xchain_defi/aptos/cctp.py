"""Circle CCTP v1 entry functions on Aptos.

Move entry functions are called with BCS encoded arguments.

- Leg 1 from Aptos: ``cctp_tools::deposit_for_burn(amount: u64, destination_domain: u32,
  mint_recipient: address, burn_token: address)``
- Leg 2 to Aptos: ``cctp_v1_receive_with_gas_drop_off::handle_receive_message_entry(message: vector<u8>,
  attestation: vector<u8>, gas_drop_to: address, gas_amount: u64)``

- `Circle Aptos packages <https://github.com/circlefin/aptos-cctp>`_
"""

from aptos_sdk.account_address import AccountAddress
from aptos_sdk.bcs import Serializer
from aptos_sdk.transactions import EntryFunction, TransactionArgument, TransactionPayload

from xchain_defi.cctp.constants import APTOS_DEPOSIT_FOR_BURN_FUNCTION, APTOS_RECEIVE_MESSAGE_FUNCTION, APTOS_USDC
from xchain_defi.aptos.address import parse_account_address


def split_function_id(function_id: str) -> tuple[str, str]:
    """``0xaddr::module::function`` to (``0xaddr::module``, ``function``)."""
    address, module, function = function_id.split("::")
    return f"{address}::{module}", function


def build_deposit_for_burn_arguments(
    amount: int,
    destination_domain: int,
    mint_recipient: bytes,
    burn_token: str = APTOS_USDC,
) -> list[TransactionArgument]:
    assert len(mint_recipient) == 32, f"Mint recipient must be 32 bytes, got {len(mint_recipient)}"
    return [
        TransactionArgument(amount, Serializer.u64),
        TransactionArgument(destination_domain, Serializer.u32),
        TransactionArgument(AccountAddress(bytes(mint_recipient)), Serializer.struct),
        TransactionArgument(parse_account_address(burn_token), Serializer.struct),
    ]


def encode_deposit_for_burn_arguments(
    amount: int,
    destination_domain: int,
    mint_recipient: bytes,
    burn_token: str = APTOS_USDC,
) -> bytes:
    """Concatenated BCS bytes of the ``deposit_for_burn`` arguments."""
    return b"".join(arg.encode() for arg in build_deposit_for_burn_arguments(amount, destination_domain, mint_recipient, burn_token))


def build_deposit_for_burn_payload(
    amount: int,
    destination_domain: int,
    mint_recipient: bytes,
    burn_token: str = APTOS_USDC,
) -> TransactionPayload:
    module, function = split_function_id(APTOS_DEPOSIT_FOR_BURN_FUNCTION)
    arguments = build_deposit_for_burn_arguments(amount, destination_domain, mint_recipient, burn_token)
    return TransactionPayload(EntryFunction.natural(module, function, [], arguments))


def build_receive_message_payload(
    message: bytes,
    attestation: bytes,
    gas_drop_to: AccountAddress,
    gas_amount: int = 0,
) -> TransactionPayload:
    """Mint attested USDC and optionally drop ``gas_amount`` octas on ``gas_drop_to``."""
    module, function = split_function_id(APTOS_RECEIVE_MESSAGE_FUNCTION)
    arguments = [
        TransactionArgument(bytes(message), Serializer.to_bytes),
        TransactionArgument(bytes(attestation), Serializer.to_bytes),
        TransactionArgument(gas_drop_to, Serializer.struct),
        TransactionArgument(gas_amount, Serializer.u64),
    ]
    return TransactionPayload(EntryFunction.natural(module, function, [], arguments))
