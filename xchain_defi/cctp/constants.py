"""Circle CCTP v1 constants for Solana and Aptos.

Cross-Chain Transfer Protocol deployment addresses and domain mappings.

CCTP enables burn-and-mint USDC transfers across chains:

1. Source chain: call ``deposit_for_burn`` on the TokenMessenger to burn USDC
2. Circle's Iris attestation service signs the burn event
3. Destination chain: call ``receive_message`` on the MessageTransmitter to mint USDC

The ``burnToken`` field of the message is always the source chain's native USDC address.
The ``mintRecipient`` field is the *routable* account on the destination chain:
the USDC associated token account on Solana, the owner account on Aptos.

- `CCTP documentation <https://developers.circle.com/cctp>`_
- `Solana programs <https://github.com/circlefin/solana-cctp-contracts>`_
- `Aptos packages <https://github.com/circlefin/aptos-cctp>`_
"""

#: CCTP domain ID for Solana mainnet
CCTP_DOMAIN_SOLANA = 5

#: CCTP domain ID for Aptos mainnet
CCTP_DOMAIN_APTOS = 9

#: Human-readable names for CCTP domains
CCTP_DOMAIN_NAMES: dict[int, str] = {
    CCTP_DOMAIN_SOLANA: "Solana",
    CCTP_DOMAIN_APTOS: "Aptos",
}

#: Only message version supported by this client
CCTP_MESSAGE_VERSION = 0

#: Only burn message body version supported by this client
CCTP_BODY_VERSION = 0

#: USDC uses 6 decimals on both chains
USDC_DECIMALS = 6

#: Circle Iris attestation API (v1 messages endpoint).
#:
#: Queried as ``{base}/{source_domain}/{transaction_id}``.
IRIS_API_BASE_URL = "https://iris-api.circle.com/v1/messages"

#: Circle Iris attestation API for testnets
IRIS_API_SANDBOX_URL = "https://iris-api-sandbox.circle.com/v1/messages"

#
# Solana
#

#: Native USDC mint on Solana mainnet
SOLANA_USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

#: CCTP TokenMessengerMinter program on Solana
SOLANA_TOKEN_MESSENGER_MINTER = "CCTPiPYPc6AsJuwueEnWgSgucamXDZwBd53dQ11YiKX3"

#: CCTP MessageTransmitter program on Solana
SOLANA_MESSAGE_TRANSMITTER = "CCTPmbSD7gX1bxKPAmg77w8oFzNFpaQiQUWD43TKaecd"

#: SPL token program
SOLANA_TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

#: SPL associated token account program
SOLANA_ASSOCIATED_TOKEN_PROGRAM = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"

#: System program
SOLANA_SYSTEM_PROGRAM = "11111111111111111111111111111111"

#: Lamports kept on top of the rent exempt minimum when sweeping ephemeral accounts
SOLANA_REFUND_FEE_BUFFER = 5_000

#: Size of the nonce buckets tracked by one ``used_nonces`` account
SOLANA_USED_NONCES_BUCKET = 6400

#: Source domains at or above this use a ``-`` delimiter in ``used_nonces`` seeds
SOLANA_USED_NONCES_DELIMITER_DOMAIN = 11

#
# Aptos
#

#: Native USDC fungible asset metadata address on Aptos mainnet
APTOS_USDC = "0xbae207659db88bea0cbead6da0ed00aac12edcdda169e591cd41c94180b46f3b"

#: Circle helper script package exposing ``cctp_tools::deposit_for_burn``
APTOS_DEPOSIT_FOR_BURN_FUNCTION = "0x35e75139eea19566dc8ac00be056e9bd605e788370d76e8bacf87177aeb32dac::cctp_tools::deposit_for_burn"

#: Receiver module which calls ``message_transmitter::receive_message``
#: and optionally drops APT gas on the recipient
APTOS_RECEIVE_MESSAGE_FUNCTION = "0xdb4058f273ce5fb86fffba7ce0436c6711a6f9997c1c4eed1a0aaccd6cd4bc6c::cctp_v1_receive_with_gas_drop_off::handle_receive_message_entry"

#: Transaction lifetime for user-paid Aptos transactions
APTOS_TRANSACTION_TTL = 1800

#: Transaction lifetime when a fee payer sponsors the transaction
APTOS_SPONSORED_TRANSACTION_TTL = 100

#: Gas limit used for CCTP entry functions
APTOS_MAX_GAS_AMOUNT = 100_000

#: Octas per gas unit
APTOS_GAS_UNIT_PRICE = 100

#: Aptos mainnet chain id
APTOS_MAINNET_CHAIN_ID = 1

#
# Explorers
#

#: Transaction explorer link templates
EXPLORER_TRANSACTION_URLS: dict[int, str] = {
    CCTP_DOMAIN_SOLANA: "https://solscan.io/tx/{tx_id}",
    CCTP_DOMAIN_APTOS: "https://explorer.aptoslabs.com/txn/{tx_id}?network=mainnet",
}
