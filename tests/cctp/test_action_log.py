"""Action log, chain registry and wallet serialisation."""

import asyncio

import pytest

from xchain_defi.cctp.action_log import END_OF_LOG, ActionLog, ActionStatus
from xchain_defi.cctp.chain import BuiltTransaction, ChainKind
from xchain_defi.cctp.errors import ValidationError
from xchain_defi.cctp.registry import ProtocolRegistry
from xchain_defi.wallet import SerialisedWallet

from tests.cctp.conftest import FakeChain, FakeWallet


@pytest.mark.asyncio
async def test_subscriber_gets_events_then_end():
    log = ActionLog("attempt-1")
    queue = log.subscribe()

    log.pending("leg1_submit", "Submitting burn")
    log.success("leg1_submit", "Burn submitted", link="https://explorer.example/tx/1")
    log.close()

    first = await queue.get()
    second = await queue.get()
    assert await queue.get() is END_OF_LOG

    assert first.status == ActionStatus.pending
    assert first.duration is None
    assert second.duration is not None and second.duration >= 0
    assert "https://explorer.example/tx/1" in str(second)
    assert [e.step for e in log.events] == ["leg1_submit", "leg1_submit"]


@pytest.mark.asyncio
async def test_subscribe_closed_log():
    log = ActionLog("attempt-1")
    log.close()
    queue = log.subscribe()
    assert await queue.get() is END_OF_LOG


def test_closed_log_rejects_events():
    log = ActionLog("attempt-1")
    log.close()
    with pytest.raises(AssertionError):
        log.error("leg2_mint", "too late")

    log.reopen()
    log.error("leg2_mint", "resumed")
    assert log.events[-1].status == ActionStatus.error


def test_registry_lookup(solana_chain, aptos_chain):
    registry = ProtocolRegistry([solana_chain, aptos_chain])
    assert registry.get(ChainKind.aptos) is aptos_chain
    assert registry.get_by_domain(5) is solana_chain
    assert ChainKind.solana in registry

    with pytest.raises(ValidationError, match="not registered"):
        registry.get_by_domain(0)


def test_registry_duplicates(journal, solana_chain):
    registry = ProtocolRegistry([solana_chain])
    with pytest.raises(ValueError):
        registry.register(FakeChain(ChainKind.solana, 99, "sol2:", journal))
    with pytest.raises(ValueError):
        registry.register(FakeChain(ChainKind.aptos, 5, "apt:", journal))

    with pytest.raises(ValidationError):
        ProtocolRegistry().get(ChainKind.aptos)


@pytest.mark.asyncio
async def test_serialised_wallet_one_request_at_a_time():
    active = 0
    peak = 0

    class SlowWallet(FakeWallet):
        async def sign_transaction(self, tx):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await super().sign_transaction(tx)

    wallet = SerialisedWallet(SlowWallet(ChainKind.solana, "sol:user"))
    tx = BuiltTransaction(chain=ChainKind.solana, description="test", signer="sol:user", build_args={"action": "burn"})

    signatures = await asyncio.gather(*[wallet.sign_transaction(tx) for _ in range(5)])

    assert peak == 1
    assert signatures == ["signature-of-sol:user"] * 5
    assert wallet.get_address() == "sol:user"
    assert wallet.chain_kind == ChainKind.solana
