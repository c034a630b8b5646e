"""HTTP and JSON-RPC endpoint management.

- Wrap a primary and fallback node endpoint behind one client,
  see :py:class:`xchain_defi.provider.fallback.ResilientRpcClient`
"""
