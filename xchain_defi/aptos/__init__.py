"""Aptos side of the CCTP bridge.

- Primary fungible store addresses
- Circle CCTP entry function payloads
- Async REST client
"""
