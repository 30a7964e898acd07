"""
Ballot integrity and tally services.

- shared: models and helpers used by every service
- ballot_api: FastAPI application for elections, ballots and tallies
- tally_worker: change-feed consumer that refreshes live tallies
"""

__version__ = '1.0.0'
