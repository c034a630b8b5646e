"""Circle Cross-Chain Transfer Protocol (CCTP v1) client for Solana and Aptos.

- :py:mod:`xchain_defi.cctp.message` wire codec
- :py:mod:`xchain_defi.cctp.attestation` attestation oracle polling
- :py:mod:`xchain_defi.cctp.orchestrator` two-leg burn and mint state machine
- :py:mod:`xchain_defi.cctp.funding` ephemeral account bookkeeping and refunds
"""
