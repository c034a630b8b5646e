"""Attestation polling against a local fake Iris server."""

import asyncio
from unittest.mock import patch

import aiohttp
import pytest

from xchain_defi.cctp.attestation import (
    AttestationNotReady,
    fetch_attestation,
    is_attestation_ready,
    parse_attestation_response,
)
from xchain_defi.cctp.config import AttestationPollConfig
from xchain_defi.cctp.constants import CCTP_DOMAIN_APTOS, CCTP_DOMAIN_SOLANA
from xchain_defi.cctp.errors import AttestationCancelledError, AttestationTimeoutError, DecodingError, RecoveryPath

from tests.cctp.conftest import FAKE_ATTESTATION, make_burn_message

MESSAGE = make_burn_message(CCTP_DOMAIN_APTOS, CCTP_DOMAIN_SOLANA, b"\x05" * 32, 100_000, nonce=42)


@pytest.fixture()
def ready_iris(iris):
    iris.resolve = lambda domain, tx_id: MESSAGE
    return iris


def test_delay_schedule():
    """Exponential backoff capped at the maximum, grace period before the first attempt."""
    poll = AttestationPollConfig(initial_delay=10, max_delay=60, grace_period=5)
    assert [poll.get_delay(n) for n in range(1, 7)] == [5, 20, 40, 60, 60, 60]


@pytest.mark.asyncio
@pytest.mark.parametrize("not_found", [0, 1, 2, 4])
async def test_ready_after_not_found(ready_iris, fake_sleep, sleeps, not_found):
    """k 404 answers, then ready: k+1 calls and the backoff delays between them."""
    ready_iris.not_found = not_found
    poll = AttestationPollConfig(max_attempts=15, initial_delay=10, max_delay=60)

    attestation = await fetch_attestation(CCTP_DOMAIN_APTOS, "0xabc", poll=poll, api_base_url=ready_iris.url, sleep=fake_sleep)

    assert len(ready_iris.calls) == not_found + 1
    assert sleeps == [poll.get_delay(n) for n in range(2, not_found + 2)]
    assert attestation.message == MESSAGE
    assert attestation.attestation == FAKE_ATTESTATION
    assert attestation.event_nonce == 1
    assert attestation.decoded.nonce == 42
    assert attestation.source_tx_id == "0xabc"


@pytest.mark.asyncio
async def test_backoff_delays(ready_iris, fake_sleep, sleeps):
    ready_iris.not_found = 2
    poll = AttestationPollConfig(max_attempts=15, initial_delay=10, max_delay=60)
    await fetch_attestation(CCTP_DOMAIN_APTOS, "0xabc", poll=poll, api_base_url=ready_iris.url, sleep=fake_sleep)
    assert sleeps == [20, 40]


@pytest.mark.asyncio
async def test_pending_is_not_ready(ready_iris, fake_sleep):
    """PENDING attestation is retried like a 404 and never returned."""
    ready_iris.pending = 2
    poll = AttestationPollConfig(max_attempts=5, initial_delay=0, max_delay=0)

    attestation = await fetch_attestation(CCTP_DOMAIN_APTOS, "0xabc", poll=poll, api_base_url=ready_iris.url, sleep=fake_sleep)

    assert len(ready_iris.calls) == 3
    assert attestation.attestation == FAKE_ATTESTATION


@pytest.mark.asyncio
async def test_timeout(ready_iris, fake_sleep):
    ready_iris.not_found = 100
    poll = AttestationPollConfig(max_attempts=4, initial_delay=0, max_delay=0)

    with pytest.raises(AttestationTimeoutError) as exc_info:
        await fetch_attestation(CCTP_DOMAIN_APTOS, "0xabc", poll=poll, api_base_url=ready_iris.url, sleep=fake_sleep)

    assert len(ready_iris.calls) == 4
    assert exc_info.value.funds_burned
    assert exc_info.value.recovery == RecoveryPath.resume


@pytest.mark.asyncio
async def test_cancel_before_first_attempt(ready_iris, fake_sleep):
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(AttestationCancelledError):
        await fetch_attestation(CCTP_DOMAIN_APTOS, "0xabc", api_base_url=ready_iris.url, cancel_event=cancel, sleep=fake_sleep)

    assert ready_iris.calls == []


@pytest.mark.asyncio
async def test_cancel_during_delay(ready_iris):
    """Cancelling while sleeping stops before the next request."""
    ready_iris.not_found = 100
    cancel = asyncio.Event()

    async def _sleep(seconds):
        cancel.set()

    with pytest.raises(AttestationCancelledError):
        await fetch_attestation(CCTP_DOMAIN_APTOS, "0xabc", api_base_url=ready_iris.url, cancel_event=cancel, sleep=_sleep)

    assert len(ready_iris.calls) == 1


@pytest.mark.asyncio
async def test_progress_callback(ready_iris, fake_sleep):
    ready_iris.not_found = 1
    outcomes = []
    poll = AttestationPollConfig(max_attempts=3, initial_delay=0, max_delay=0)
    await fetch_attestation(
        CCTP_DOMAIN_APTOS,
        "0xabc",
        poll=poll,
        api_base_url=ready_iris.url,
        sleep=fake_sleep,
        on_attempt=lambda n, outcome: outcomes.append((n, outcome)),
    )
    assert outcomes[0][0] == 1
    assert "404" in outcomes[0][1]
    assert outcomes[1] == (2, "ready")


@pytest.mark.asyncio
async def test_is_attestation_ready(ready_iris):
    async with aiohttp.ClientSession() as session:
        ready_iris.not_found = 1
        assert not await is_attestation_ready(CCTP_DOMAIN_APTOS, "0xabc", ready_iris.url, session=session)
        assert await is_attestation_ready(CCTP_DOMAIN_APTOS, "0xabc", ready_iris.url, session=session)


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"messages": []},
        {"messages": [{"message": "0x00", "attestation": "PENDING"}]},
        {"messages": [{"message": None, "attestation": "0xab"}]},
        {"messages": [{"message": "0xzz", "attestation": "0xab"}]},
        {"messages": ["oops"]},
        {"messages": [{"message": "0x" + MESSAGE.hex(), "attestation": 123}]},
        {"messages": [{"message": 123, "attestation": "0xab"}]},
        {"messages": [{"message": "0x" + MESSAGE.hex(), "attestation": "0xab", "eventNonce": "n/a"}]},
        {"messages": [{"message": "0x" + MESSAGE.hex(), "attestation": "0xab", "eventNonce": [1]}]},
        [],
    ],
)
def test_unusable_payloads(payload):
    with pytest.raises(AttestationNotReady):
        parse_attestation_response(payload)


@pytest.mark.asyncio
async def test_malformed_payload_is_retried(ready_iris, fake_sleep):
    """A garbage answer counts as not ready, the next poll can still succeed."""
    answers = iter([["oops"], None])
    original = parse_attestation_response

    def _flaky_parse(data):
        if next(answers) is not None:
            return original({"messages": ["oops"]})
        return original(data)

    poll = AttestationPollConfig(max_attempts=3, initial_delay=0, max_delay=0)
    with patch("xchain_defi.cctp.attestation.parse_attestation_response", side_effect=_flaky_parse):
        attestation = await fetch_attestation(CCTP_DOMAIN_APTOS, "0xabc", poll=poll, api_base_url=ready_iris.url, sleep=fake_sleep)

    assert len(ready_iris.calls) == 2
    assert attestation.decoded.nonce == 42


@pytest.mark.asyncio
async def test_undecodable_message_is_fatal(iris, fake_sleep):
    """Signed bytes which are not a CCTP message never change, do not poll again."""
    iris.resolve = lambda domain, tx_id: b"\x00" * 100
    poll = AttestationPollConfig(max_attempts=5, initial_delay=0, max_delay=0)

    with pytest.raises(DecodingError):
        await fetch_attestation(CCTP_DOMAIN_APTOS, "0xabc", poll=poll, api_base_url=iris.url, sleep=fake_sleep)

    assert len(iris.calls) == 1
