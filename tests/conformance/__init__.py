"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the pool ledger.

The tests are organized by invariant:
1. test_balance.py - Committed debits always equal committed credits
2. test_atomicity.py - Batches and epochs are all-or-nothing
3. test_settlement.py - Conversions never favour the investor
4. test_price_bounds.py - Guard basis points are bounded and enforced exactly

These tests use hypothesis for property-based testing.
"""
