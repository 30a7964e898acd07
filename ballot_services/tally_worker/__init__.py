"""
Tally worker.

Consumes the ballot change feed, bumps tally cache versions and keeps the
live per-candidate totals exported as Prometheus gauges.
"""
