"""Finish a stuck Solana <-> Aptos USDC transfer.

Leg 1 burned the USDC but the mint on the destination chain never happened,
e.g. the browser tab was closed while waiting for the attestation.
This script fetches the attestation for the burn transaction and submits
the mint with a local key paying the destination chain fees.

Usage:

.. code-block:: shell

    export JSON_RPC_SOLANA=...
    export APTOS_NODE_URL=https://api.mainnet.aptoslabs.com/v1
    export SOLANA_PRIVATE_KEY=...   # base-58, needed when minting on Solana
    export APTOS_PRIVATE_KEY=0x...  # hex, needed when minting on Aptos
    SOURCE=aptos LEG1_TX=0x... python scripts/cctp/resume-bridge.py

Optionally set ``DESTINATION_ADDRESS`` to mint to another wallet than the fee payer.
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

from aptos_sdk.account import Account
from solders.keypair import Keypair
from tqdm_loggable.auto import tqdm

from xchain_defi.aptos.adapter import AptosChain
from xchain_defi.aptos.rest import AptosRest
from xchain_defi.cctp.action_log import ActionStatus
from xchain_defi.cctp.chain import ChainKind
from xchain_defi.cctp.config import BridgeConfig
from xchain_defi.cctp.constants import CCTP_DOMAIN_APTOS, CCTP_DOMAIN_SOLANA
from xchain_defi.cctp.orchestrator import TransferOrchestrator, TransferStatus
from xchain_defi.cctp.registry import ProtocolRegistry
from xchain_defi.provider.fallback import ResilientRpcClient
from xchain_defi.solana.adapter import SolanaChain
from xchain_defi.solana.rpc import SolanaRpc
from xchain_defi.utils import setup_console_logging
from xchain_defi.wallet import AptosAccountWallet, SolanaKeypairWallet, Wallet

logger = logging.getLogger(__name__)

SOURCE_DOMAINS = {
    "solana": CCTP_DOMAIN_SOLANA,
    "aptos": CCTP_DOMAIN_APTOS,
}


def load_wallets() -> dict[ChainKind, Wallet]:
    wallets = {}
    if key := os.environ.get("SOLANA_PRIVATE_KEY"):
        wallets[ChainKind.solana] = SolanaKeypairWallet(Keypair.from_base58_string(key))
    if key := os.environ.get("APTOS_PRIVATE_KEY"):
        wallets[ChainKind.aptos] = AptosAccountWallet(Account.load_key(key))
    return wallets


async def run(source: str, leg1_tx: str, destination_address: str | None) -> int:
    config = BridgeConfig.from_env()

    solana_client = ResilientRpcClient(config.solana_rpc_urls)
    aptos_client = ResilientRpcClient(config.aptos_node_urls)

    registry = ProtocolRegistry(
        [
            SolanaChain(SolanaRpc(solana_client)),
            AptosChain(AptosRest(aptos_client), config),
        ]
    )

    wallets = load_wallets()
    for kind, wallet in wallets.items():
        print(f"{kind.value} fee payer: {wallet.get_address()}")

    orchestrator = TransferOrchestrator(registry, wallets, config=config)
    attempt_id = None
    try:
        with tqdm(desc=f"Resuming {leg1_tx[:12]}...", unit="step") as progress:
            async for event in orchestrator.resume_from_leg1(leg1_tx, SOURCE_DOMAINS[source], destination_address):
                attempt_id = event.attempt_id
                progress.set_postfix_str(event.step)
                if event.status != ActionStatus.pending:
                    progress.update(1)
                progress.write(str(event))
    finally:
        await orchestrator.aclose()
        await solana_client.close()
        await aptos_client.close()

    attempt = orchestrator.get_attempt(attempt_id)
    print(f"Transfer {attempt.id} ended as {attempt.status.value}")
    if attempt.leg2_tx_id:
        print(f"Mint transaction: {attempt.leg2_tx_id}")
    return 0 if attempt.status == TransferStatus.complete else 1


def main():
    setup_console_logging(
        default_log_level=os.environ.get("LOG_LEVEL", "info"),
        log_file=Path("logs/resume-bridge.log"),
    )

    source = os.environ.get("SOURCE", "").lower()
    assert source in SOURCE_DOMAINS, f"SOURCE must be one of {', '.join(SOURCE_DOMAINS)}, got {source!r}"

    leg1_tx = os.environ.get("LEG1_TX")
    assert leg1_tx, "LEG1_TX environment variable must be set"

    sys.exit(asyncio.run(run(source, leg1_tx, os.environ.get("DESTINATION_ADDRESS"))))


if __name__ == "__main__":
    main()
