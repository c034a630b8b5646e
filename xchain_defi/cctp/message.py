"""CCTP v1 message codec.

Encode and decode the fixed layout message which MessageTransmitter emits
on the source chain and consumes on the destination chain.

Message header (116 bytes):

- ``uint32 version`` (4 bytes)
- ``uint32 sourceDomain`` (4 bytes)
- ``uint32 destinationDomain`` (4 bytes)
- ``uint64 nonce`` (8 bytes)
- ``bytes32 sender`` (32 bytes), TokenMessenger on the source chain
- ``bytes32 recipient`` (32 bytes), TokenMessenger on the destination chain
- ``bytes32 destinationCaller`` (32 bytes), zero means anyone can relay

Burn message body (132 bytes):

- ``uint32 version`` (4 bytes)
- ``bytes32 burnToken`` (32 bytes)
- ``bytes32 mintRecipient`` (32 bytes)
- ``uint256 amount`` (32 bytes)
- ``bytes32 messageSender`` (32 bytes)

Integers are packed big-endian like Circle's ``abi.encodePacked`` layout,
which is what both the Solana and Aptos programs parse.

Example::

    from xchain_defi.cctp.message import decode_message, extract_mint_recipient

    message = decode_message(attestation.message)
    assert message.body.amount == 100_000
    recipient = extract_mint_recipient(attestation.message)
"""

import struct
from dataclasses import dataclass

from eth_typing import HexStr
from eth_utils import decode_hex

from xchain_defi.cctp.constants import CCTP_BODY_VERSION, CCTP_MESSAGE_VERSION
from xchain_defi.cctp.errors import DecodingError, EncodingError

#: Header length in bytes
HEADER_LENGTH = 116

#: Burn message body length in bytes
BODY_LENGTH = 132

#: Full message length in bytes
MESSAGE_LENGTH = HEADER_LENGTH + BODY_LENGTH

#: Offset of ``burnToken`` within the full message
BURN_TOKEN_OFFSET = HEADER_LENGTH + 4

#: Offset of ``mintRecipient`` within the full message
MINT_RECIPIENT_OFFSET = BURN_TOKEN_OFFSET + 32

#: Offset of ``amount`` within the full message
AMOUNT_OFFSET = MINT_RECIPIENT_OFFSET + 32

_HEADER_STRUCT = struct.Struct(">IIIQ32s32s32s")
_BODY_STRUCT = struct.Struct(">I32s32s32s32s")

assert _HEADER_STRUCT.size == HEADER_LENGTH
assert _BODY_STRUCT.size == BODY_LENGTH

_UINT32_MAX = 2**32 - 1
_UINT64_MAX = 2**64 - 1
_UINT256_MAX = 2**256 - 1

ZERO_BYTES32 = b"\x00" * 32


@dataclass(slots=True, frozen=True)
class BurnMessageBody:
    """Token messenger payload of a CCTP message."""

    #: Source chain USDC address, 32 bytes
    burn_token: bytes

    #: Routable USDC account on the destination chain, 32 bytes
    mint_recipient: bytes

    #: Amount in USDC base units
    amount: int

    #: Account which called ``deposit_for_burn``, 32 bytes
    message_sender: bytes

    #: Body version, always 0
    version: int = CCTP_BODY_VERSION


@dataclass(slots=True, frozen=True)
class CCTPMessage:
    """Decoded CCTP v1 cross-chain message."""

    source_domain: int

    destination_domain: int

    #: Source chain issued nonce, unique per source domain
    nonce: int

    #: Source TokenMessenger, 32 bytes
    sender: bytes

    #: Destination TokenMessenger, 32 bytes
    recipient: bytes

    #: Who may relay the message, zero bytes for anyone
    destination_caller: bytes

    body: BurnMessageBody

    version: int = CCTP_MESSAGE_VERSION

    @property
    def mint_recipient(self) -> bytes:
        return self.body.mint_recipient

    @property
    def amount(self) -> int:
        return self.body.amount


def _check_uint(name: str, value: int, maximum: int):
    if not isinstance(value, int) or value < 0 or value > maximum:
        raise EncodingError(f"{name} does not fit its field: {value!r}")


def _check_bytes32(name: str, value: bytes):
    if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
        raise EncodingError(f"{name} must be 32 bytes, got {value!r}")


def encode_message(message: CCTPMessage) -> bytes:
    """Serialise a message to its 248 byte wire form.

    :raises EncodingError:
        If an integer overflows its width or an address is not 32 bytes.
    """
    body = message.body

    _check_uint("version", message.version, _UINT32_MAX)
    _check_uint("source_domain", message.source_domain, _UINT32_MAX)
    _check_uint("destination_domain", message.destination_domain, _UINT32_MAX)
    _check_uint("nonce", message.nonce, _UINT64_MAX)
    _check_bytes32("sender", message.sender)
    _check_bytes32("recipient", message.recipient)
    _check_bytes32("destination_caller", message.destination_caller)
    _check_uint("body version", body.version, _UINT32_MAX)
    _check_bytes32("burn_token", body.burn_token)
    _check_bytes32("mint_recipient", body.mint_recipient)
    _check_uint("amount", body.amount, _UINT256_MAX)
    _check_bytes32("message_sender", body.message_sender)

    header = _HEADER_STRUCT.pack(
        message.version,
        message.source_domain,
        message.destination_domain,
        message.nonce,
        bytes(message.sender),
        bytes(message.recipient),
        bytes(message.destination_caller),
    )
    payload = _BODY_STRUCT.pack(
        body.version,
        bytes(body.burn_token),
        bytes(body.mint_recipient),
        body.amount.to_bytes(32, "big"),
        bytes(body.message_sender),
    )
    data = header + payload
    assert len(data) == MESSAGE_LENGTH, f"Message length {len(data)}, expected {MESSAGE_LENGTH}"
    return data


def decode_message(data: bytes) -> CCTPMessage:
    """Parse 248 wire bytes to a :py:class:`CCTPMessage`.

    :raises DecodingError:
        Wrong length or unsupported message or body version.
    """
    if not isinstance(data, (bytes, bytearray)):
        raise DecodingError(f"Expected bytes, got {type(data)}")

    if len(data) != MESSAGE_LENGTH:
        raise DecodingError(f"CCTP message must be {MESSAGE_LENGTH} bytes, got {len(data)}")

    version, source_domain, destination_domain, nonce, sender, recipient, destination_caller = _HEADER_STRUCT.unpack_from(data, 0)
    if version != CCTP_MESSAGE_VERSION:
        raise DecodingError(f"Unsupported CCTP message version {version}")

    body_version, burn_token, mint_recipient, amount, message_sender = _BODY_STRUCT.unpack_from(data, HEADER_LENGTH)
    if body_version != CCTP_BODY_VERSION:
        raise DecodingError(f"Unsupported burn message body version {body_version}")

    return CCTPMessage(
        version=version,
        source_domain=source_domain,
        destination_domain=destination_domain,
        nonce=nonce,
        sender=sender,
        recipient=recipient,
        destination_caller=destination_caller,
        body=BurnMessageBody(
            version=body_version,
            burn_token=burn_token,
            mint_recipient=mint_recipient,
            amount=int.from_bytes(amount, "big"),
            message_sender=message_sender,
        ),
    )


def extract_mint_recipient(data: bytes) -> bytes:
    """Get the 32 byte ``mintRecipient`` of an encoded message.

    The whole message is validated first.

    :raises DecodingError:
        If the message does not decode.
    """
    return decode_message(data).body.mint_recipient


def message_from_hex(text: HexStr | str) -> bytes:
    """Decode ``0x`` prefixed hex text as returned by the attestation API."""
    try:
        return decode_hex(text)
    except (ValueError, TypeError) as e:
        raise DecodingError(f"Not a hex string: {text!r}") from e
