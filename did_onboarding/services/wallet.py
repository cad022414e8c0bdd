"""
DID Onboarding Wallet Service
Supplies the account address the DID is issued to.

Signing and transactions stay in the user's wallet; the pipeline only needs
a valid, checksummed address.
"""

from typing import Optional, Protocol

from web3 import Web3

from did_onboarding.errors import WalletError


class WalletProvider(Protocol):
    """Wallet capability: returns the connected account address."""

    async def request_accounts(self) -> str:
        ...


def normalize_address(address: Optional[str]) -> str:
    """
    Validate an Ethereum address and return its checksummed form.

    Raises:
        WalletError: if the address is missing or malformed
    """
    if not address or not address.strip():
        raise WalletError("No wallet account was provided")

    address = address.strip()
    if not Web3.is_address(address):
        raise WalletError(f"Invalid wallet address: {address}")
    return Web3.to_checksum_address(address)


class ProvidedWallet:
    """Address handed over by a browser wallet (e.g. eth_requestAccounts)."""

    def __init__(self, address: Optional[str]):
        self.address = address

    async def request_accounts(self) -> str:
        return normalize_address(self.address)
