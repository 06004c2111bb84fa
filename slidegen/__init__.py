"""
slidegen: generation task lifecycle, token ledger and entitlement reconciliation.

A user submits a topic; the tracker drives an external presentation job to
completion and debits exactly one token per completed job, while entitlement
sync keeps the balance in step with the purchase provider.
"""

__version__ = "0.1.0"
