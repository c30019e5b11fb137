"""
Escrow settlement app.

Holds milestone funds, captures them, releases them to the payee or
refunds them to the payer, and keeps an append-only double-entry ledger
consistent with every one of those transitions.
"""
