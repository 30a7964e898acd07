"""Prometheus metrics for the Ballot API."""
from prometheus_client import Counter, Histogram

ballots_cast = Counter(
    "ballots_cast_total",
    "Total number of ballots recorded"
)
ballot_rejections = Counter(
    "ballot_rejections_total",
    "Total number of rejected cast-vote attempts",
    ["reason"]
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)
tally_cache_requests = Counter(
    "tally_cache_requests_total",
    "Tally cache lookups",
    ["result"]
)
turnout_unmapped_ballots = Counter(
    "turnout_unmapped_ballots_total",
    "Ballots whose voter identity could not be mapped to an eligibility key"
)
change_feed_publish = Counter(
    "change_feed_publish_total",
    "Change-feed publish attempts",
    ["status"]
)
