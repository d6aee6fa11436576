"""
Receipt ↔ Transaction Matching & Reconciliation Engine

Keeps bank transactions, uploaded receipt files, partners and no-receipt
categories consistent: junction-based file connections, partner conflict
resolution, completeness tracking, pattern learning from user corrections,
and supervision of background automation workers.
"""

__version__ = "0.1.0"
