"""Async Solana JSON-RPC client.

Thin typed wrapper over the handful of RPC methods the bridge needs,
running through :py:class:`xchain_defi.provider.fallback.ResilientRpcClient`.

- `Solana RPC methods <https://solana.com/docs/rpc/http>`_
"""

import base64
import logging
from dataclasses import dataclass

from solders.hash import Hash

from xchain_defi.provider.fallback import ResilientRpcClient

logger = logging.getLogger(__name__)

#: Commitment used for reads and confirmation
DEFAULT_COMMITMENT = "confirmed"


@dataclass(slots=True, frozen=True)
class SignatureStatus:
    """Result of ``getSignatureStatuses`` for one signature."""

    #: ``processed``, ``confirmed`` or ``finalized``
    confirmation_status: str | None

    #: Transaction error object, ``None`` on success
    err: object | None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmation_status in ("confirmed", "finalized")


class SolanaRpc:
    """The subset of Solana RPC used by CCTP transfers."""

    def __init__(self, client: ResilientRpcClient, commitment: str = DEFAULT_COMMITMENT):
        self.client = client
        self.commitment = commitment

    def __repr__(self):
        return f"<SolanaRpc {self.client!r}>"

    async def close(self):
        await self.client.close()

    async def get_latest_blockhash(self) -> Hash:
        result = await self.client.json_rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def send_transaction(self, raw: bytes, skip_preflight: bool = False) -> str:
        """Broadcast a serialised transaction.

        :return:
            Base-58 transaction signature
        """
        encoded = base64.b64encode(raw).decode("ascii")
        options = {
            "encoding": "base64",
            "skipPreflight": skip_preflight,
            "preflightCommitment": self.commitment,
        }
        return await self.client.json_rpc("sendTransaction", [encoded, options])

    async def get_signature_status(self, signature: str) -> SignatureStatus | None:
        """Status of one transaction, ``None`` if the node has not seen it."""
        result = await self.client.json_rpc("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        value = result["value"][0]
        if value is None:
            return None
        return SignatureStatus(confirmation_status=value.get("confirmationStatus"), err=value.get("err"))

    async def get_balance(self, address: str) -> int:
        """Lamports held by an account."""
        result = await self.client.json_rpc("getBalance", [address, {"commitment": self.commitment}])
        return int(result["value"])

    async def get_minimum_balance_for_rent_exemption(self, data_length: int = 0) -> int:
        return int(await self.client.json_rpc("getMinimumBalanceForRentExemption", [data_length]))
