"""Stashu-Engine: ecash settlement and custody for pay-to-unlock files."""

from stashu_engine.ecash.client import EcashClient
from stashu_engine.ecash.wallet import MintWallet
from stashu_engine.vault.cipher import TokenVault

__all__ = [
    "EcashClient",
    "MintWallet",
    "TokenVault",
]
__version__ = "0.1.0"
