"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the CurveLedger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. test_conservation.py - Reserve and token conservation, non-decreasing price
2. test_atomicity.py - All-or-nothing operation semantics
3. test_loan_invariants.py - Bucket mirror, watermark, sweep idempotence, determinism

These tests use hypothesis for property-based testing. Shared strategies and
the action driver live in strategies.py.
"""
