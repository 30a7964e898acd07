"""
Ballot API service.

FastAPI front of the ballot engine: election lifecycle, cast-vote,
results, turnout and candidate self-service results.
"""
