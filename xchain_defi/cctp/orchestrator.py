"""Two-leg CCTP transfer state machine.

Drive a USDC transfer from one chain to another:

1. Validate the amount, the destination address and the wallets
2. Derive the routable destination account, burn on the source chain (leg 1)
3. Wait for the burn to confirm
4. Poll Circle's attestation service, check the attested recipient
5. Mint on the destination chain (leg 2) and wait for it to confirm
6. Sweep any ephemeral accounts back to the user

Progress is streamed as :py:class:`xchain_defi.cctp.action_log.ActionLogEvent`.

Example::

    registry = ProtocolRegistry([SolanaChain(solana_rpc), AptosChain(aptos_rest)])
    orchestrator = TransferOrchestrator(
        registry,
        wallets={ChainKind.solana: solana_wallet, ChainKind.aptos: aptos_wallet},
    )

    params = TransferParams("0.1", ChainKind.aptos, ChainKind.solana, destination_address=solana_owner)
    async for event in orchestrator.start_transfer(params):
        print(event)

If attestation polling times out, the burn stays on-chain. Finish the mint
later without burning again::

    async for event in orchestrator.resume_from_leg1(leg1_tx_id, CCTP_DOMAIN_APTOS, solana_owner):
        print(event)
"""

import asyncio
import datetime
import enum
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable

import aiohttp

from xchain_defi.cctp.action_log import END_OF_LOG, ActionLog, ActionLogEvent
from xchain_defi.cctp.attestation import CCTPAttestation, fetch_attestation
from xchain_defi.cctp.chain import NODE_ERRORS, ChainAdapter, ChainKind, wait_for_confirmation
from xchain_defi.cctp.config import DEFAULT_BRIDGE_CONFIG, BridgeConfig
from xchain_defi.cctp.constants import CCTP_DOMAIN_NAMES, USDC_DECIMALS
from xchain_defi.cctp.errors import (
    AttemptInFlightError,
    AttestationCancelledError,
    BridgeError,
    ConfirmationTimeoutError,
    RecoveryPath,
    RoutingMismatchError,
    SubmissionError,
    ValidationError,
)
from xchain_defi.cctp.funding import AccountFundingLedger, FundedAccount, RefundResult
from xchain_defi.cctp.registry import ProtocolRegistry
from xchain_defi.cctp.steps import collect_signatures
from xchain_defi.utils import format_token_amount, parse_token_amount
from xchain_defi.wallet import SerialisedWallet, Wallet

logger = logging.getLogger(__name__)


class TransferStatus(enum.Enum):
    """Where a transfer attempt is."""

    initializing = "initializing"
    leg1_submitted = "leg1_submitted"
    leg1_confirmed = "leg1_confirmed"
    awaiting_attestation = "awaiting_attestation"
    attestation_ready = "attestation_ready"
    leg2_submitted = "leg2_submitted"
    complete = "complete"
    failed = "failed"


#: Statuses after which nothing happens to an attempt anymore
TERMINAL_STATUSES = {TransferStatus.complete, TransferStatus.failed}


@dataclass(slots=True)
class TransferParams:
    """User intent."""

    #: Human readable USDC amount, e.g. ``"0.1"``
    amount: str | Decimal

    source_chain: ChainKind

    destination_chain: ChainKind

    #: Owner account on the destination chain, never a token account
    destination_address: str


@dataclass(slots=True)
class TransferAttempt:
    """One user initiated transfer.

    Only :py:class:`TransferOrchestrator` mutates attempts.
    """

    id: str

    source_chain: ChainKind

    destination_chain: ChainKind

    #: USDC base units, 0 until validated
    amount: int

    destination_address: str

    status: TransferStatus = TransferStatus.initializing

    leg1_tx_id: str | None = None

    leg2_tx_id: str | None = None

    ephemeral_accounts: list[FundedAccount] = field(default_factory=list)

    #: 32 byte mint recipient we derived and put in the burn
    expected_mint_recipient: bytes | None = None

    #: Leg 1 observed final on-chain
    funds_burned: bool = False

    attestation: CCTPAttestation | None = None

    #: Terminal failure
    error: BridgeError | None = None

    created_at: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TransferOrchestrator:
    """Run CCTP transfers between chains in a :py:class:`ProtocolRegistry`.

    - At most one running orchestration per attempt id
    - Leg 2 and attestation polling only after leg 1 is confirmed
    - Wallet signature requests are serialised per wallet
    - Refunds only after the attempt is terminal
    """

    def __init__(
        self,
        registry: ProtocolRegistry,
        wallets: dict[ChainKind, Wallet],
        config: BridgeConfig = DEFAULT_BRIDGE_CONFIG,
        ledger: AccountFundingLedger | None = None,
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        """
        :param wallets:
            User wallets per chain. Wrapped so only one signature request is outstanding per wallet.

        :param session:
            aiohttp session for the attestation service.

        :param sleep:
            Awaitable sleep for all polling, injectable for tests.
        """
        self.registry = registry
        self.wallets = {kind: w if isinstance(w, SerialisedWallet) else SerialisedWallet(w) for kind, w in wallets.items()}
        self.config = config
        self.ledger = ledger or AccountFundingLedger(registry, config.confirmation, fee_buffer=config.solana_fee_buffer, sleep=sleep)
        self.session = session
        self.sleep = sleep

        self.attempts: dict[str, TransferAttempt] = {}
        self.logs: dict[str, ActionLog] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    def __repr__(self):
        return f"<TransferOrchestrator {self.registry!r}, {len(self.attempts)} attempts>"

    #
    # Public API
    #

    async def start_transfer(self, params: TransferParams) -> AsyncIterator[ActionLogEvent]:
        """Start a new attempt and stream its events until it is terminal."""
        attempt = self._new_attempt(params.source_chain, params.destination_chain, params.destination_address)
        async for event in self._drive(attempt, self._run_transfer(attempt, params)):
            yield event

    async def resume_from_leg1(
        self,
        leg1_tx_id: str,
        source_domain: int,
        destination_address: str | None = None,
    ) -> AsyncIterator[ActionLogEvent]:
        """Finish the mint of a burn which is already confirmed on-chain.

        Nothing is burned again. If an earlier attempt of this process burned
        with ``leg1_tx_id``, that attempt continues. Otherwise a new attempt is created.

        :param destination_address:
            Owner account receiving the mint. Defaults to the attempt's
            destination, or to the connected destination wallet.
        """
        attempt = self._find_attempt_by_leg1(leg1_tx_id)
        if attempt is None:
            source = self.registry.get_by_domain(source_domain)
            destination = self._other_chain(source.kind)
            if destination_address is None:
                destination_address = self._get_wallet(destination.kind).get_address()
            attempt = self._new_attempt(source.kind, destination.kind, destination_address)
            attempt.leg1_tx_id = leg1_tx_id
        elif attempt.status == TransferStatus.complete:
            raise ValidationError(f"Attempt {attempt.id} already minted {attempt.leg2_tx_id}, nothing to resume")
        elif destination_address is not None and attempt.destination_address != destination_address:
            raise ValidationError(f"Attempt {attempt.id} sends to {attempt.destination_address}, not {destination_address}")

        async for event in self._drive(attempt, self._run_resume(attempt)):
            yield event

    async def refund_ephemeral_accounts(self, attempt_id: str) -> RefundResult:
        """Sweep ephemeral accounts of a finished attempt back to the user.

        :raises AttemptInFlightError:
            The attempt is still running.
        """
        attempt = self.get_attempt(attempt_id)
        if not attempt.is_terminal or self._is_running(attempt_id):
            raise AttemptInFlightError(f"Attempt {attempt_id} is {attempt.status.value}, refund after it finishes")
        return await self.ledger.sweep(attempt_id, self._get_wallet(attempt.source_chain))

    def cancel(self, attempt_id: str):
        """Stop attestation polling of an attempt. Leg 2 will not be submitted."""
        event = self._cancel_events.get(attempt_id)
        if event is None:
            raise ValidationError(f"Unknown attempt {attempt_id}")
        logger.info("Cancelling attempt %s", attempt_id)
        event.set()

    def get_attempt(self, attempt_id: str) -> TransferAttempt:
        try:
            return self.attempts[attempt_id]
        except KeyError as e:
            raise ValidationError(f"Unknown attempt {attempt_id}") from e

    def get_action_log(self, attempt_id: str) -> ActionLog:
        self.get_attempt(attempt_id)
        return self.logs[attempt_id]

    #
    # Plumbing
    #

    def _new_attempt(self, source_chain: ChainKind, destination_chain: ChainKind, destination_address: str) -> TransferAttempt:
        attempt = TransferAttempt(
            id=uuid.uuid4().hex,
            source_chain=source_chain,
            destination_chain=destination_chain,
            amount=0,
            destination_address=destination_address,
        )
        self.attempts[attempt.id] = attempt
        self.logs[attempt.id] = ActionLog(attempt.id)
        self._cancel_events[attempt.id] = asyncio.Event()
        return attempt

    def _find_attempt_by_leg1(self, leg1_tx_id: str) -> TransferAttempt | None:
        for attempt in self.attempts.values():
            if attempt.leg1_tx_id == leg1_tx_id:
                return attempt
        return None

    def _is_running(self, attempt_id: str) -> bool:
        task = self._running.get(attempt_id)
        return task is not None and not task.done()

    def _get_wallet(self, kind: ChainKind) -> SerialisedWallet:
        try:
            return self.wallets[kind]
        except KeyError as e:
            raise ValidationError(f"No {kind.value} wallet connected") from e

    def _other_chain(self, kind: ChainKind) -> ChainAdapter:
        others = [k for k in ChainKind if k != kind and k in self.registry]
        if not others:
            raise ValidationError(f"No destination chain registered besides {kind.value}")
        return self.registry.get(others[0])

    async def _drive(self, attempt: TransferAttempt, run: Awaitable) -> AsyncIterator[ActionLogEvent]:
        """Run the state machine as a task and stream its log."""
        if self._is_running(attempt.id):
            run.close()
            raise AttemptInFlightError(f"Attempt {attempt.id} is already running")

        log = self.logs[attempt.id]
        log.reopen()
        self._cancel_events[attempt.id].clear()
        queue = log.subscribe()

        task = asyncio.create_task(run, name=f"cctp-{attempt.id}")
        self._running[attempt.id] = task
        task.add_done_callback(lambda t: self._running.pop(attempt.id, None) if self._running.get(attempt.id) is t else None)

        while True:
            event = await queue.get()
            if event is END_OF_LOG:
                break
            yield event

        # Surface programming errors, bridge errors are already in the log
        await task

    async def _run_transfer(self, attempt: TransferAttempt, params: TransferParams):
        log = self.logs[attempt.id]
        try:
            source, destination = self._validate(attempt, params)
            await self._run_leg1(attempt, source, destination)
            await self._run_leg2(attempt, source, destination)
        except BridgeError as e:
            await self._fail(attempt, e)
        except NODE_ERRORS as e:
            await self._fail(attempt, wrap_node_error(attempt, e))
        else:
            await self._finish(attempt)
        finally:
            log.close()

    async def _run_resume(self, attempt: TransferAttempt):
        log = self.logs[attempt.id]
        try:
            source = self.registry.get(attempt.source_chain)
            destination = self.registry.get(attempt.destination_chain)
            attempt.destination_address = destination.normalise_address(attempt.destination_address)
            attempt.expected_mint_recipient = destination.mint_recipient_for(attempt.destination_address)
            attempt.error = None

            log.pending("leg1_confirm", f"Checking burn {attempt.leg1_tx_id} on {source.kind.value}", link=source.explorer_link(attempt.leg1_tx_id))
            await wait_for_confirmation(source, attempt.leg1_tx_id, self.config.confirmation, sleep=self.sleep)
            attempt.status = TransferStatus.leg1_confirmed
            attempt.funds_burned = True
            log.success("leg1_confirm", "Burn is confirmed, resuming the mint")

            await self._run_leg2(attempt, source, destination)
        except BridgeError as e:
            await self._fail(attempt, e)
        except NODE_ERRORS as e:
            await self._fail(attempt, wrap_node_error(attempt, e))
        else:
            await self._finish(attempt)
        finally:
            log.close()

    #
    # States
    #

    def _validate(self, attempt: TransferAttempt, params: TransferParams) -> tuple[ChainAdapter, ChainAdapter]:
        """``initializing``: no on-chain effects."""
        log = self.logs[attempt.id]
        log.pending("validate", "Validating transfer")

        if params.source_chain == params.destination_chain:
            raise ValidationError("Source and destination chain must differ")

        source = self.registry.get(params.source_chain)
        destination = self.registry.get(params.destination_chain)

        amount = parse_token_amount(params.amount, USDC_DECIMALS)
        if amount <= 0:
            raise ValidationError(f"Amount must be positive, got {params.amount}")
        if Decimal(amount) > self.config.max_amount.scaleb(USDC_DECIMALS):
            raise ValidationError(f"Amount {params.amount} USDC exceeds the maximum of {self.config.max_amount} USDC")

        destination_address = destination.normalise_address(params.destination_address)

        for kind in (source.kind, destination.kind):
            wallet = self._get_wallet(kind)
            if wallet.chain_kind != kind:
                raise ValidationError(f"Wallet {wallet!r} cannot sign {kind.value} transactions")

        # Derive now so a bad destination fails before anything is signed
        attempt.expected_mint_recipient = destination.mint_recipient_for(destination_address)
        attempt.amount = amount
        attempt.destination_address = destination_address

        log.success(
            "validate",
            f"Transfer {format_token_amount(amount, USDC_DECIMALS)} USDC from {CCTP_DOMAIN_NAMES[source.domain]} to {CCTP_DOMAIN_NAMES[destination.domain]}, "
            f"mint recipient {destination.from_bytes32(attempt.expected_mint_recipient)}",
        )
        return source, destination

    async def _fund_event_rent_payer(self, attempt: TransferAttempt, source: ChainAdapter, owner: str, wallet: Wallet):
        """Fund a throwaway key paying CCTP event account rent."""
        log = self.logs[attempt.id]
        address, secret = source.create_ephemeral_account()
        amount = self.config.solana_event_rent_funding

        log.pending("fund", f"Funding event rent payer {address}")
        tx = await source.build_native_transfer(owner, address, amount)
        await collect_signatures(source, tx, wallet)
        tx_id = await source.submit(tx)

        # Recorded before confirmation so a timeout still leaves a refund path
        account = FundedAccount(
            attempt_id=attempt.id,
            chain=source.kind,
            address=address,
            amount=amount,
            funding_tx_id=tx_id,
            owner_secret=secret,
        )
        self.ledger.fund(account)
        attempt.ephemeral_accounts.append(account)

        await wait_for_confirmation(source, tx_id, self.config.confirmation, sleep=self.sleep)
        log.success("fund", f"Funded event rent payer {address}", link=source.explorer_link(tx_id), link_text="View funding")
        return secret

    async def _run_leg1(self, attempt: TransferAttempt, source: ChainAdapter, destination: ChainAdapter):
        """``leg1_submitted`` and ``leg1_confirmed``."""
        log = self.logs[attempt.id]
        wallet = self._get_wallet(source.kind)
        owner = source.normalise_address(wallet.get_address())

        event_rent_payer = None
        if source.supports_ephemeral_accounts and self.config.solana_event_rent_funding > 0:
            event_rent_payer = await self._fund_event_rent_payer(attempt, source, owner, wallet)

        log.pending("leg1", f"Please sign the burn of {format_token_amount(attempt.amount, USDC_DECIMALS)} USDC on {source.kind.value}")
        tx = await source.build_burn(owner, attempt.amount, destination.domain, attempt.expected_mint_recipient, event_rent_payer)
        await collect_signatures(source, tx, wallet)
        attempt.leg1_tx_id = await source.submit(tx)
        attempt.status = TransferStatus.leg1_submitted
        log.success("leg1", f"Burn submitted: {attempt.leg1_tx_id}", link=source.explorer_link(attempt.leg1_tx_id), link_text="View burn")

        log.pending("leg1_confirm", "Waiting for the burn to confirm")
        await wait_for_confirmation(source, attempt.leg1_tx_id, self.config.confirmation, sleep=self.sleep)
        attempt.status = TransferStatus.leg1_confirmed
        attempt.funds_burned = True
        log.success("leg1_confirm", "Burn confirmed")

    def _check_routing(self, attempt: TransferAttempt, attestation: CCTPAttestation, source: ChainAdapter, destination: ChainAdapter):
        message = attestation.decoded
        if message.source_domain != source.domain or message.destination_domain != destination.domain:
            raise RoutingMismatchError(
                f"Attested message routes domain {message.source_domain} -> {message.destination_domain}, expected {source.domain} -> {destination.domain}",
            )
        if message.mint_recipient != attempt.expected_mint_recipient:
            raise RoutingMismatchError(
                f"Attested mint recipient {message.mint_recipient.hex()} is not the derived account {attempt.expected_mint_recipient.hex()}",
            )

    async def _run_leg2(self, attempt: TransferAttempt, source: ChainAdapter, destination: ChainAdapter):
        """``awaiting_attestation`` to ``complete``."""
        assert attempt.funds_burned, "Leg 2 before leg 1 confirmation"
        log = self.logs[attempt.id]
        cancel_event = self._cancel_events[attempt.id]

        attempt.status = TransferStatus.awaiting_attestation
        log.pending("attestation", "Waiting for Circle attestation")

        def _on_attempt(n: int, outcome: str):
            logger.debug("Attempt %s attestation poll %d: %s", attempt.id, n, outcome)

        attestation = await fetch_attestation(
            source.domain,
            attempt.leg1_tx_id,
            poll=self.config.attestation,
            api_base_url=self.config.attestation_url,
            session=self.session,
            cancel_event=cancel_event,
            sleep=self.sleep,
            on_attempt=_on_attempt,
        )
        attempt.attestation = attestation
        self._check_routing(attempt, attestation, source, destination)
        if not attempt.amount:
            # Resumed burn of another session
            attempt.amount = attestation.decoded.amount
        attempt.status = TransferStatus.attestation_ready
        log.success("attestation", f"Attestation received for nonce {attestation.decoded.nonce}")

        wallet = self._get_wallet(destination.kind)
        payer = destination.normalise_address(wallet.get_address())
        log.pending("leg2", f"Please sign the mint on {destination.kind.value}")
        tx = await destination.build_mint(payer, attempt.destination_address, attestation)
        await collect_signatures(destination, tx, wallet)

        if cancel_event.is_set():
            raise AttestationCancelledError(f"Attempt {attempt.id} cancelled before the mint was submitted")

        attempt.leg2_tx_id = await destination.submit(tx)
        attempt.status = TransferStatus.leg2_submitted
        log.success("leg2", f"Mint submitted: {attempt.leg2_tx_id}", link=destination.explorer_link(attempt.leg2_tx_id), link_text="View mint")

        log.pending("leg2_confirm", "Waiting for the mint to confirm")
        await wait_for_confirmation(destination, attempt.leg2_tx_id, self.config.confirmation, sleep=self.sleep)
        log.success("leg2_confirm", "Mint confirmed")

    #
    # Terminal states
    #

    async def _compensate(self, attempt: TransferAttempt):
        """Sweep ephemeral accounts. Failures are reported, never raised."""
        if not self.ledger.has_unrefunded(attempt.id):
            return

        log = self.logs[attempt.id]
        log.pending("refund", "Returning unspent funds from ephemeral accounts")
        try:
            result = await self.ledger.sweep(attempt.id, self._get_wallet(attempt.source_chain))
        except (BridgeError, *NODE_ERRORS) as e:
            logger.warning("Refund of attempt %s failed: %s", attempt.id, e, exc_info=True)
            log.error("refund", f"Refund failed: {e}. Retry with refund_ephemeral_accounts('{attempt.id}')")
            return

        source = self.registry.get(attempt.source_chain)
        if result.tx_id:
            log.success("refund", f"Refunded {result.total_refunded} to your wallet", link=source.explorer_link(result.tx_id), link_text="View refund")
        else:
            log.success("refund", "Nothing left to refund")

    async def _finish(self, attempt: TransferAttempt):
        attempt.status = TransferStatus.complete
        await self._compensate(attempt)
        self.logs[attempt.id].success("complete", f"Transfer complete: {format_token_amount(attempt.amount, USDC_DECIMALS)} USDC delivered to {attempt.destination_address}")

    async def _fail(self, attempt: TransferAttempt, error: BridgeError):
        assert attempt.status != TransferStatus.complete, f"Attempt {attempt.id} is complete, cannot fail it"
        attempt.status = TransferStatus.failed
        attempt.error = error
        await self._compensate(attempt)

        error.funds_burned = attempt.funds_burned
        error.recovery = RecoveryPath.combine(
            resumable=attempt.leg1_tx_id is not None and (attempt.funds_burned or isinstance(error, ConfirmationTimeoutError)),
            refundable=self.ledger.has_unrefunded(attempt.id),
        )
        self.logs[attempt.id].error("failed", describe_failure(attempt, error))

    async def aclose(self):
        """Wait for running attempts to finish."""
        running = [t for t in self._running.values() if not t.done()]
        if running:
            await asyncio.gather(*running, return_exceptions=True)


def wrap_node_error(attempt: TransferAttempt, error: Exception) -> SubmissionError:
    """Turn a node or network failure into a bridge failure the user can act on."""
    logger.warning("Attempt %s hit a node error in %s: %s", attempt.id, attempt.status.value, error, exc_info=True)
    wrapped = SubmissionError(f"Node request failed while {attempt.status.value}: {error.__class__.__name__}: {error}")
    wrapped.__cause__ = error
    return wrapped


def describe_failure(attempt: TransferAttempt, error: BridgeError) -> str:
    """Tell the user what failed, whether funds were burned and how to recover."""
    if attempt.funds_burned:
        burned = "Your USDC was burned on the source chain and is not minted yet."
    elif attempt.leg1_tx_id:
        burned = f"The burn {attempt.leg1_tx_id} was submitted but not confirmed. Check the explorer before trying again, it may still land."
    else:
        burned = "No funds were burned."

    match error.recovery:
        case RecoveryPath.resume:
            recovery = f"Finish the mint with resume_from_leg1('{attempt.leg1_tx_id}')."
        case RecoveryPath.refund:
            recovery = f"Recover ephemeral account funds with refund_ephemeral_accounts('{attempt.id}')."
        case RecoveryPath.resume_and_refund:
            recovery = f"Finish the mint with resume_from_leg1('{attempt.leg1_tx_id}') and recover ephemeral account funds with refund_ephemeral_accounts('{attempt.id}')."
        case _:
            recovery = "Nothing to recover."

    return f"{error.__class__.__name__}: {error} {burned} {recovery}"
