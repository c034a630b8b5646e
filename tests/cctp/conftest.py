"""Shared fixtures for CCTP transfer tests.

The chains, wallets and the Circle attestation service are in-memory fakes,
so the state machine can be tested without any network.
"""

import asyncio
import hashlib
from collections import Counter
from typing import Callable

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from xchain_defi.cctp.attestation import CCTPAttestation
from xchain_defi.cctp.chain import BuiltTransaction, ChainAdapter, ChainKind, TransactionReceipt, TransactionStatus
from xchain_defi.cctp.config import BridgeConfig
from xchain_defi.cctp.constants import CCTP_DOMAIN_APTOS, CCTP_DOMAIN_SOLANA
from xchain_defi.cctp.errors import SigningRejectedError, SubmissionError, ValidationError
from xchain_defi.cctp.message import BurnMessageBody, CCTPMessage, encode_message
from xchain_defi.cctp.orchestrator import TransferOrchestrator
from xchain_defi.cctp.registry import ProtocolRegistry
from xchain_defi.wallet import Wallet

#: Rent exempt minimum of the fake chain
FAKE_MINIMUM_BALANCE = 890_880

#: Signature bytes served by the fake attestation service
FAKE_ATTESTATION = bytes.fromhex("ab" * 65)


def fake_mint_recipient(owner: str) -> bytes:
    """Token account a fake chain derives for an owner."""
    return hashlib.sha256(b"token-account:" + owner.encode()).digest()


def make_burn_message(
    source_domain: int,
    destination_domain: int,
    mint_recipient: bytes,
    amount: int,
    nonce: int = 1,
) -> bytes:
    message = CCTPMessage(
        source_domain=source_domain,
        destination_domain=destination_domain,
        nonce=nonce,
        sender=b"\x01" * 32,
        recipient=b"\x02" * 32,
        destination_caller=b"\x00" * 32,
        body=BurnMessageBody(
            burn_token=b"\x03" * 32,
            mint_recipient=mint_recipient,
            amount=amount,
            message_sender=b"\x04" * 32,
        ),
    )
    return encode_message(message)


class FakeChain(ChainAdapter):
    """Chain with instant, scriptable transactions.

    Every interesting call is appended to ``journal`` so tests can check ordering.
    """

    def __init__(
        self,
        kind: ChainKind,
        domain: int,
        prefix: str,
        journal: list[str],
        confirm_after: int = 1,
        supports_ephemeral_accounts: bool = False,
    ):
        self.kind = kind
        self.domain = domain
        self.prefix = prefix
        self.journal = journal
        self.confirm_after = confirm_after
        self.supports_ephemeral_accounts = supports_ephemeral_accounts
        self.balances = Counter()
        self.polls = Counter()
        self.submitted: dict[str, BuiltTransaction] = {}
        #: Transactions confirmed outside of this process
        self.external_confirmed: set[str] = set()
        #: Actions whose submission fails
        self.fail_submit: set[str] = set()
        #: Actions which never confirm
        self.never_confirm: set[str] = set()
        self.counter = 0

    def __repr__(self):
        return f"<FakeChain {self.kind.value}>"

    def normalise_address(self, address: str) -> str:
        if not isinstance(address, str) or not address.startswith(self.prefix) or len(address) <= len(self.prefix):
            raise ValidationError(f"Not a {self.kind.value} address: {address!r}")
        return address

    def to_bytes32(self, address: str) -> bytes:
        return hashlib.sha256(self.normalise_address(address).encode()).digest()

    def from_bytes32(self, raw: bytes) -> str:
        return self.prefix + raw.hex()

    def mint_recipient_for(self, owner: str) -> bytes:
        return fake_mint_recipient(self.normalise_address(owner))

    def _tx(self, action: str, signer: str, **build_args) -> BuiltTransaction:
        return BuiltTransaction(
            chain=self.kind,
            description=action,
            signer=signer,
            payload=action.encode(),
            build_args={"action": action, **build_args},
        )

    async def build_burn(self, owner, amount, destination_domain, mint_recipient, event_rent_payer=None) -> BuiltTransaction:
        await asyncio.sleep(0)
        self.journal.append(f"{self.kind.value}:build_burn")
        return self._tx(
            "burn",
            owner,
            amount=amount,
            destination_domain=destination_domain,
            mint_recipient=mint_recipient,
            event_rent_payer=event_rent_payer,
        )

    async def build_mint(self, payer: str, recipient_owner: str, attestation: CCTPAttestation) -> BuiltTransaction:
        await asyncio.sleep(0)
        self.journal.append(f"{self.kind.value}:build_mint")
        return self._tx("mint", payer, recipient_owner=recipient_owner, attestation=attestation)

    async def refresh(self, tx: BuiltTransaction):
        tx.signatures.clear()

    def sign_locally(self, tx: BuiltTransaction):
        return

    async def submit(self, tx: BuiltTransaction) -> str:
        await asyncio.sleep(0)
        action = tx.build_args["action"]
        if not tx.is_fully_signed():
            raise SubmissionError(f"{action} is not signed")
        if action in self.fail_submit:
            raise SubmissionError(f"Node rejected {action}")

        self.counter += 1
        tx_id = f"{self.kind.value}-{action}-{self.counter}"
        self.submitted[tx_id] = tx
        self.journal.append(f"{self.kind.value}:submit_{action}")

        match action:
            case "fund":
                self.balances[tx.build_args["recipient"]] += tx.build_args["amount"]
            case "refund":
                for address, amount in tx.build_args["refunds"]:
                    self.balances[address] -= amount
        return tx_id

    async def get_status(self, tx_id: str) -> TransactionReceipt:
        await asyncio.sleep(0)
        self.polls[tx_id] += 1

        if tx_id in self.external_confirmed:
            return TransactionReceipt(tx_id, TransactionStatus.confirmed)

        tx = self.submitted.get(tx_id)
        if tx is None or tx.build_args["action"] in self.never_confirm:
            return TransactionReceipt(tx_id, TransactionStatus.pending)

        if self.polls[tx_id] >= self.confirm_after:
            self.journal.append(f"{self.kind.value}:confirmed_{tx.build_args['action']}")
            return TransactionReceipt(tx_id, TransactionStatus.confirmed)
        return TransactionReceipt(tx_id, TransactionStatus.pending)

    def create_ephemeral_account(self) -> tuple[str, dict]:
        self.counter += 1
        address = f"{self.prefix}ephemeral{self.counter}"
        return address, {"address": address}

    async def build_native_transfer(self, payer: str, recipient: str, amount: int) -> BuiltTransaction:
        return self._tx("fund", payer, recipient=recipient, amount=amount)

    async def build_refund(self, refunds: list[tuple[dict, int]], fee_payer: str) -> BuiltTransaction:
        return self._tx("refund", fee_payer, refunds=[(secret["address"], amount) for secret, amount in refunds])

    async def get_balance(self, address: str) -> int:
        return self.balances[address]

    async def get_minimum_balance(self) -> int:
        return FAKE_MINIMUM_BALANCE

    def export_secret(self, secret: dict) -> str:
        return f"secret-of-{secret['address']}"

    def count(self, entry: str) -> int:
        return self.journal.count(f"{self.kind.value}:{entry}")


class FakeWallet(Wallet):
    """Signs everything unless told to reject."""

    def __init__(self, chain_kind: ChainKind, address: str, journal: list[str] | None = None):
        self.chain_kind = chain_kind
        self.address = address
        self.journal = journal if journal is not None else []
        self.reject = False

    def __repr__(self):
        return f"<FakeWallet {self.address}>"

    def get_address(self) -> str:
        return self.address

    async def sign_transaction(self, tx: BuiltTransaction) -> str:
        await asyncio.sleep(0)
        if self.reject:
            raise SigningRejectedError("User rejected the request")
        self.journal.append(f"{self.chain_kind.value}:sign_{tx.build_args['action']}")
        return f"signature-of-{self.address}"


class FakeIris:
    """Circle attestation service double.

    Answers 404 ``not_found`` times per transaction, then ``PENDING``
    ``pending`` times, then the message ``resolve`` returns.
    """

    def __init__(self, journal: list[str]):
        self.journal = journal
        self.calls: list[tuple[int, str]] = []
        self.not_found = 0
        self.pending = 0
        self.available = True
        self.resolve: Callable[[int, str], bytes | None] = lambda domain, tx_id: None
        self.url: str | None = None
        self._seen = Counter()

    async def handle(self, request: web.Request) -> web.Response:
        domain = int(request.match_info["domain"])
        tx_id = request.match_info["tx_id"]
        self.calls.append((domain, tx_id))
        self.journal.append("iris:poll")
        self._seen[tx_id] += 1
        seen = self._seen[tx_id]

        message = self.resolve(domain, tx_id) if self.available else None
        if message is None or seen <= self.not_found:
            return web.json_response({"error": "Message hash not found"}, status=404)

        if seen <= self.not_found + self.pending:
            return web.json_response({"messages": [{"message": "0x" + message.hex(), "attestation": "PENDING", "eventNonce": "1"}]})

        return web.json_response(
            {
                "messages": [
                    {
                        "message": "0x" + message.hex(),
                        "attestation": "0x" + FAKE_ATTESTATION.hex(),
                        "eventNonce": "1",
                    }
                ]
            }
        )


@pytest.fixture()
def journal() -> list[str]:
    """Ordered record of chain, wallet and oracle calls."""
    return []


@pytest.fixture()
def solana_chain(journal) -> FakeChain:
    return FakeChain(ChainKind.solana, CCTP_DOMAIN_SOLANA, "sol:", journal, supports_ephemeral_accounts=True)


@pytest.fixture()
def aptos_chain(journal) -> FakeChain:
    return FakeChain(ChainKind.aptos, CCTP_DOMAIN_APTOS, "apt:", journal)


@pytest.fixture()
def registry(solana_chain, aptos_chain) -> ProtocolRegistry:
    return ProtocolRegistry([solana_chain, aptos_chain])


@pytest.fixture()
def solana_wallet(journal) -> FakeWallet:
    return FakeWallet(ChainKind.solana, "sol:user", journal)


@pytest.fixture()
def aptos_wallet(journal) -> FakeWallet:
    return FakeWallet(ChainKind.aptos, "apt:user", journal)


@pytest_asyncio.fixture()
async def iris(journal, registry):
    """Attestation service which attests whatever the fake source chain burned."""
    fake = FakeIris(journal)

    def _resolve(domain: int, tx_id: str) -> bytes | None:
        source = registry.get_by_domain(domain)
        tx = source.submitted.get(tx_id)
        if tx is None or tx.build_args["action"] != "burn":
            return None
        return make_burn_message(
            source_domain=domain,
            destination_domain=tx.build_args["destination_domain"],
            mint_recipient=tx.build_args["mint_recipient"],
            amount=tx.build_args["amount"],
        )

    fake.resolve = _resolve

    app = web.Application()
    app.router.add_get("/v1/messages/{domain}/{tx_id}", fake.handle)
    server = TestServer(app)
    await server.start_server()
    fake.url = str(server.make_url("/v1/messages"))
    try:
        yield fake
    finally:
        await server.close()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def fake_sleep(sleeps):
    """Record delays instead of waiting."""

    async def _sleep(seconds: float):
        sleeps.append(seconds)
        await asyncio.sleep(0)

    return _sleep


@pytest.fixture()
def config(iris) -> BridgeConfig:
    config = BridgeConfig.create_test_config()
    config.attestation_url = iris.url
    return config


@pytest_asyncio.fixture()
async def orchestrator(registry, solana_wallet, aptos_wallet, config, fake_sleep):
    orchestrator = TransferOrchestrator(
        registry,
        wallets={ChainKind.solana: solana_wallet, ChainKind.aptos: aptos_wallet},
        config=config,
        sleep=fake_sleep,
    )
    yield orchestrator
    await orchestrator.aclose()
