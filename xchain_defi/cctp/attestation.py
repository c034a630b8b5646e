"""Circle CCTP attestation service client.

Poll Circle's Iris API for burn attestations needed to complete
cross-chain USDC transfers.

After ``deposit_for_burn`` lands on the source chain, Circle's attestation
service must sign the burn event before the destination chain mints.
This module polls for and retrieves the attestation.

The oracle answers ``GET {base}/{source_domain}/{transaction_id}`` with::

    {"messages": [{"message": "0x...", "attestation": "0x...", "eventNonce": "123"}]}

- HTTP 404 means the burn is not indexed yet
- ``"attestation": "PENDING"`` means the burn is indexed but not signed yet
- Anything else without usable ``message`` and ``attestation`` is an error,
  retried like the two above

Example::

    from xchain_defi.cctp.attestation import fetch_attestation
    from xchain_defi.cctp.constants import CCTP_DOMAIN_SOLANA

    attestation = await fetch_attestation(
        CCTP_DOMAIN_SOLANA,
        "5j7s...signature",
    )

    # Use attestation.message and attestation.attestation
    # with the receive_message builder of the destination chain
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import aiohttp
from hexbytes import HexBytes

from xchain_defi.cctp.config import AttestationPollConfig
from xchain_defi.cctp.constants import IRIS_API_BASE_URL
from xchain_defi.cctp.errors import AttestationCancelledError, AttestationTimeoutError, DecodingError, RecoveryPath
from xchain_defi.cctp.message import CCTPMessage, decode_message

logger = logging.getLogger(__name__)

#: HTTP 404 status code indicating resource not found
HTTP_NOT_FOUND = 404

#: Attestation value while Circle has not signed yet
PENDING_ATTESTATION = "PENDING"

#: Callback ``(attempt, outcome)`` after every poll
AttemptCallback = Callable[[int, str], None]


class AttestationNotReady(Exception):
    """One poll did not give a usable attestation."""


@dataclass(slots=True)
class CCTPAttestation:
    """Attestation data for a CCTP burn event.

    Contains the signed message and attestation needed to call
    ``receive_message`` on the destination chain's MessageTransmitter.
    """

    #: The CCTP message bytes to relay to the destination chain
    message: bytes

    #: The signed attestation bytes from Circle's Iris service
    attestation: bytes

    #: Source chain event nonce as reported by Iris
    event_nonce: int | None

    #: Decoded message
    decoded: CCTPMessage

    #: Transaction id the attestation was looked up with
    source_tx_id: str | None = None


def parse_attestation_response(data: dict) -> CCTPAttestation:
    """Turn an Iris response body to an attestation.

    :raises AttestationNotReady:
        Pending or malformed payload.

    :raises DecodingError:
        Attestation is ready but the message bytes are not a CCTP message.
    """
    if not isinstance(data, dict):
        raise AttestationNotReady(f"Unexpected payload type {type(data)}")

    messages = data.get("messages")
    if not messages or not isinstance(messages, list):
        raise AttestationNotReady("No messages in response")

    msg = messages[0]
    if not isinstance(msg, dict):
        raise AttestationNotReady(f"Unexpected message entry: {msg!r}")

    attestation_hex = msg.get("attestation")
    message_hex = msg.get("message")

    if not attestation_hex or not message_hex:
        raise AttestationNotReady(f"Missing message or attestation: {msg}")

    if not isinstance(attestation_hex, str) or not isinstance(message_hex, str):
        raise AttestationNotReady(f"Message and attestation must be hex strings: {msg}")

    if attestation_hex.strip().upper() == PENDING_ATTESTATION:
        raise AttestationNotReady("Attestation pending")

    try:
        message = bytes(HexBytes(message_hex))
        attestation = bytes(HexBytes(attestation_hex))
    except ValueError as e:
        raise AttestationNotReady(f"Malformed hex in response: {e}") from e

    event_nonce = msg.get("eventNonce")
    if event_nonce not in (None, ""):
        try:
            event_nonce = int(event_nonce)
        except (TypeError, ValueError) as e:
            raise AttestationNotReady(f"Bad eventNonce {event_nonce!r}") from e
    else:
        event_nonce = None

    return CCTPAttestation(
        message=message,
        attestation=attestation,
        event_nonce=event_nonce,
        decoded=decode_message(message),
    )


async def fetch_attestation_once(
    session: aiohttp.ClientSession,
    source_domain: int,
    transaction_id: str,
    api_base_url: str = IRIS_API_BASE_URL,
    timeout: float = 30.0,
) -> CCTPAttestation:
    """Ask the oracle once.

    :raises AttestationNotReady:
        Not found, pending, or any HTTP or payload error.
    """
    url = f"{api_base_url.rstrip('/')}/{source_domain}/{transaction_id}"
    async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
        # Iris returns 404 until the burn transaction is indexed
        if response.status == HTTP_NOT_FOUND:
            raise AttestationNotReady("Not indexed yet (404)")

        if response.status != 200:
            text = await response.text()
            raise AttestationNotReady(f"HTTP {response.status}: {text[:200]}")

        try:
            data = await response.json(content_type=None)
        except ValueError as e:
            raise AttestationNotReady(f"Response is not JSON: {e}") from e

    attestation = parse_attestation_response(data)
    attestation.source_tx_id = transaction_id
    return attestation


async def fetch_attestation(
    source_domain: int,
    transaction_id: str,
    poll: AttestationPollConfig | None = None,
    api_base_url: str = IRIS_API_BASE_URL,
    session: aiohttp.ClientSession | None = None,
    cancel_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
    on_attempt: AttemptCallback | None = None,
) -> CCTPAttestation:
    """Poll the Iris API until attestation is ready or attempts run out.

    Circle's Iris service observes burn events on the source chain and
    produces a cryptographic attestation after finality is reached.

    :param source_domain:
        CCTP domain ID of the source chain (e.g. 5 for Solana).

    :param transaction_id:
        Transaction id of the ``deposit_for_burn`` call on the source chain.

    :param poll:
        Attempt count and backoff schedule. Defaults to 15 attempts,
        10 seconds initial delay doubling up to 60 seconds.

    :param api_base_url:
        Iris API messages endpoint. Defaults to mainnet.

    :param session:
        Shared aiohttp session. Created for this call if not given.

    :param cancel_event:
        Set it to stop polling. Checked before every delay and every attempt.

    :param sleep:
        Awaitable sleep, injectable for tests.

    :param on_attempt:
        Progress callback receiving the attempt number and its outcome.

    :return:
        :class:`CCTPAttestation` with message and attestation bytes.

    :raises AttestationTimeoutError:
        If attestation is not ready after the last attempt.

    :raises AttestationCancelledError:
        If ``cancel_event`` was set.

    :raises DecodingError:
        The attested message is not a CCTP v1 burn message. Not retried.
    """
    poll = poll or AttestationPollConfig()

    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession()

    def _check_cancel():
        if cancel_event is not None and cancel_event.is_set():
            raise AttestationCancelledError(f"Attestation polling cancelled for {transaction_id}")

    last_reason = "no attempts made"
    try:
        for attempt in range(1, poll.max_attempts + 1):
            _check_cancel()

            delay = poll.get_delay(attempt)
            if delay > 0:
                await sleep(delay)
                _check_cancel()

            log_level = logging.INFO if attempt == 1 else logging.DEBUG
            logger.log(
                log_level,
                "Polling CCTP attestation: domain=%s, tx=%s, attempt=%d/%d",
                source_domain,
                transaction_id,
                attempt,
                poll.max_attempts,
            )

            try:
                attestation = await fetch_attestation_once(session, source_domain, transaction_id, api_base_url)
            except AttestationNotReady as e:
                last_reason = str(e)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_reason = f"{e.__class__.__name__}: {e}"
                logger.warning("Attestation request failed: %s", last_reason)
            except DecodingError:
                # The oracle signed something we cannot parse, the same bytes come back on every poll
                logger.error("Attestation message for tx %s does not decode", transaction_id, exc_info=True)
                raise
            else:
                logger.info("Attestation ready for tx %s after %d attempts, nonce %s", transaction_id, attempt, attestation.event_nonce)
                if on_attempt:
                    on_attempt(attempt, "ready")
                return attestation

            logger.debug("Attestation not ready: %s", last_reason)
            if on_attempt:
                on_attempt(attempt, last_reason)
    finally:
        if own_session:
            await session.close()

    raise AttestationTimeoutError(
        f"CCTP attestation not ready after {poll.max_attempts} attempts for tx {transaction_id} on domain {source_domain}: {last_reason}",
        funds_burned=True,
        recovery=RecoveryPath.resume,
    )


async def is_attestation_ready(
    source_domain: int,
    transaction_id: str,
    api_base_url: str = IRIS_API_BASE_URL,
    session: aiohttp.ClientSession | None = None,
) -> bool:
    """One-shot check if attestation is ready."""
    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession()
    try:
        await fetch_attestation_once(session, source_domain, transaction_id, api_base_url)
        return True
    except AttestationNotReady:
        return False
    except (aiohttp.ClientError, asyncio.TimeoutError, DecodingError):
        logger.warning("Failed to check attestation status for tx %s", transaction_id, exc_info=True)
        return False
    finally:
        if own_session:
            await session.close()
