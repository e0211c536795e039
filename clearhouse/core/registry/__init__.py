"""
Clearhouse Claim Registry Module.

Issues claims and lists them for auction.
"""

from clearhouse.core.registry.claim_registry import ClaimRegistry

__all__ = [
    "ClaimRegistry",
]
