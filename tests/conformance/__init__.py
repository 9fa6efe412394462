"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Double entry, pool books backed by cash, settlement identities
2. atomicity.py - All-or-nothing operations, flash loan rollback
3. determinism.py - Reproducible behavior
4. temporal.py - Interest accrual and event ordering over time
5. rates_and_shares.py - Rate curve shape, share round trips

These tests use hypothesis for property-based testing.
"""
