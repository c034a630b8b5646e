"""Async Aptos fullnode REST client.

Only the endpoints the bridge needs, running through
:py:class:`xchain_defi.provider.fallback.ResilientRpcClient`.
Base URLs include the ``/v1`` prefix.

- `Aptos node API <https://fullnode.mainnet.aptoslabs.com/v1/spec>`_
"""

import logging
from dataclasses import dataclass

from xchain_defi.provider.fallback import HTTPResult, ResilientRpcClient

logger = logging.getLogger(__name__)

#: Content type for BCS encoded signed transactions
BCS_SIGNED_TRANSACTION = "application/x.aptos.signed_transaction+bcs"


class AptosApiError(ValueError):
    """Node answered with an error status."""

    def __init__(self, result: HTTPResult, api: str):
        self.status = result.status
        self.data = result.data
        message = result.data.get("message") if isinstance(result.data, dict) else result.text
        self.api_message = message
        super().__init__(f"Aptos {api} failed with HTTP {result.status}: {message}")


@dataclass(slots=True, frozen=True)
class LedgerInfo:
    chain_id: int

    #: Microseconds since epoch
    ledger_timestamp: int

    ledger_version: int

    @property
    def ledger_timestamp_seconds(self) -> int:
        return self.ledger_timestamp // 1_000_000


class AptosRest:
    """The subset of the Aptos REST API used by CCTP transfers."""

    def __init__(self, client: ResilientRpcClient):
        self.client = client

    def __repr__(self):
        return f"<AptosRest {self.client!r}>"

    async def close(self):
        await self.client.close()

    async def _get(self, path: str, api: str) -> HTTPResult:
        return await self.client.request("GET", path, api_name=api)

    async def get_ledger_info(self) -> LedgerInfo:
        result = await self._get("", "ledger_info")
        if not result.ok:
            raise AptosApiError(result, "ledger_info")
        return LedgerInfo(
            chain_id=int(result.data["chain_id"]),
            ledger_timestamp=int(result.data["ledger_timestamp"]),
            ledger_version=int(result.data["ledger_version"]),
        )

    async def get_sequence_number(self, address: str) -> int:
        """Next sequence number of an account, 0 for accounts not created yet."""
        result = await self._get(f"/accounts/{address}", "account")
        if result.status == 404:
            return 0
        if not result.ok:
            raise AptosApiError(result, "account")
        return int(result.data["sequence_number"])

    async def submit_bcs_transaction(self, signed: bytes) -> str:
        """Submit a BCS signed transaction.

        :return:
            Transaction hash

        :raises AptosApiError:
            The node refused the transaction, e.g. VM validation failure.
        """
        result = await self.client.request(
            "POST",
            "/transactions",
            data=signed,
            headers={"Content-Type": BCS_SIGNED_TRANSACTION},
            api_name="submit_transaction",
        )
        if not result.ok:
            raise AptosApiError(result, "submit_transaction")
        return result.data["hash"]

    async def get_transaction_by_hash(self, tx_hash: str) -> dict | None:
        """Transaction JSON, ``None`` if the node does not know the hash."""
        result = await self._get(f"/transactions/by_hash/{tx_hash}", "transaction_by_hash")
        if result.status == 404:
            return None
        if not result.ok:
            raise AptosApiError(result, "transaction_by_hash")
        return result.data

    async def view(self, function: str, type_arguments: list[str], arguments: list) -> list:
        result = await self.client.request(
            "POST",
            "/view",
            json_body={"function": function, "type_arguments": type_arguments, "arguments": arguments},
            api_name="view",
        )
        if not result.ok:
            raise AptosApiError(result, "view")
        return result.data
