"""
Tests for the main application module.

Covers the catalog and ledger models (User balance, Coupon, ActiveServer
transitions, Invoice) and the pricing utilities.
"""
