"""Solana side of the CCTP bridge.

- Program derived addresses and associated token accounts
- Circle TokenMessengerMinter and MessageTransmitter instruction builders
- Async JSON-RPC client
"""
