"""Bridge error taxonomy.

Every failure of a transfer attempt maps to one of the exceptions below.
Errors that happen after the source chain burn carry ``funds_burned``
and the :py:class:`RecoveryPath` the user can take.
"""

import enum


class RecoveryPath(enum.Enum):
    """What the user can do after a failed attempt."""

    #: Nothing to recover, no funds left the wallet
    none = "none"

    #: Burn is on-chain, mint can be finished with ``resume_from_leg1``
    resume = "resume"

    #: Ephemeral accounts hold user funds, sweep with ``refund_ephemeral_accounts``
    refund = "refund"

    #: Both of the above
    resume_and_refund = "resume_and_refund"

    @classmethod
    def combine(cls, resumable: bool, refundable: bool) -> "RecoveryPath":
        if resumable and refundable:
            return cls.resume_and_refund
        if resumable:
            return cls.resume
        if refundable:
            return cls.refund
        return cls.none


class BridgeError(Exception):
    """Base class for all bridge failures."""

    def __init__(self, *args, funds_burned: bool = False, recovery: RecoveryPath = RecoveryPath.none):
        super().__init__(*args)
        #: Source chain USDC has been irreversibly burned
        self.funds_burned = funds_burned
        #: How the user can recover
        self.recovery = recovery


class ValidationError(BridgeError, ValueError):
    """Bad user input. Never retried."""


class EncodingError(BridgeError, ValueError):
    """A message field does not fit its wire width."""


class DecodingError(BridgeError, ValueError):
    """Malformed CCTP message bytes."""


class DerivationError(BridgeError, ValueError):
    """No valid program derived address for the given seeds."""


class SigningRejectedError(BridgeError):
    """The user declined the signature request in their wallet."""


class SubmissionError(BridgeError):
    """The network or the chain rejected the transaction."""


class ConfirmationTimeoutError(BridgeError):
    """The chain did not report finality within the polling bound.

    The transaction may still land. Do not submit it again.
    """


class AttestationTimeoutError(BridgeError):
    """The attestation oracle did not produce a ready attestation in time."""


class AttestationCancelledError(BridgeError):
    """Attestation polling was cancelled by the caller."""


class RoutingMismatchError(BridgeError):
    """The attested mint recipient is not the account we derived."""


class AttemptInFlightError(BridgeError):
    """The transfer attempt is already being driven by another task."""
