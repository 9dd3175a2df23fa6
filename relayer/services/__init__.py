"""
Relayer services: persisted state, ledger access, transactions and payouts.
"""
