"""Integration tests for the ballot services.

These tests run the ballot engine against a real PostgreSQL so that the
storage guarantees themselves are exercised:

- The (election_id, voter_id) unique constraint under concurrent inserts
- Cascade delete of candidates, eligibility entries and ballots
- All-or-nothing election creation

Tests are skipped when PostgreSQL is not reachable.
"""
