"""Explicit registry of chains taking part in CCTP transfers.

Build one registry per process and pass it to the orchestrator::

    registry = ProtocolRegistry()
    registry.register(SolanaChain(solana_rpc, config))
    registry.register(AptosChain(aptos_rest, config))
"""

import logging

from xchain_defi.cctp.chain import ChainAdapter, ChainKind
from xchain_defi.cctp.constants import CCTP_DOMAIN_NAMES
from xchain_defi.cctp.errors import ValidationError

logger = logging.getLogger(__name__)


class ProtocolRegistry:
    """Chain kind and CCTP domain to adapter mapping."""

    def __init__(self, adapters: list[ChainAdapter] | None = None):
        self._by_kind: dict[ChainKind, ChainAdapter] = {}
        self._by_domain: dict[int, ChainAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def __repr__(self):
        return f"<ProtocolRegistry {', '.join(k.value for k in self._by_kind)}>"

    def __contains__(self, kind: ChainKind) -> bool:
        return kind in self._by_kind

    def register(self, adapter: ChainAdapter):
        """Add a chain.

        :raises ValueError:
            The chain kind or domain is already registered.
        """
        if adapter.kind in self._by_kind:
            raise ValueError(f"Chain {adapter.kind.value} already registered")
        if adapter.domain in self._by_domain:
            raise ValueError(f"CCTP domain {adapter.domain} already registered")
        self._by_kind[adapter.kind] = adapter
        self._by_domain[adapter.domain] = adapter
        logger.info("Registered %s as CCTP domain %d", adapter.kind.value, adapter.domain)

    def get(self, kind: ChainKind) -> ChainAdapter:
        try:
            return self._by_kind[kind]
        except KeyError as e:
            raise ValidationError(f"Chain {kind.value} is not registered") from e

    def get_by_domain(self, domain: int) -> ChainAdapter:
        try:
            return self._by_domain[domain]
        except KeyError as e:
            name = CCTP_DOMAIN_NAMES.get(domain, "unknown")
            raise ValidationError(f"CCTP domain {domain} ({name}) is not registered") from e
