"""xchain_defi package root.

Client-side tooling for moving native USDC between Solana and Aptos
with Circle's Cross-Chain Transfer Protocol (CCTP).

- See :py:mod:`xchain_defi.cctp` for the bridge state machine
- See :py:mod:`xchain_defi.solana` and :py:mod:`xchain_defi.aptos` for chain adapters
"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Try early abort if the Python version is too old."""

    # Use Python tuple comparison for version numbers
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"xchain-defi needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
