"""
Finalized block scanning.
"""

from .block_scanner import BlockScanner, extract_deposits

__all__ = [
    "BlockScanner",
    "extract_deposits",
]
