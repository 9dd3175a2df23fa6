"""
Market Vault Relayer

Keeps the NFT market contract in sync with its custodial account:
- Deposit detection from finalized blocks
- Withdrawal queue draining and payouts
- Registration of deposits accepted out-of-band
"""

__version__ = "0.1.0"
