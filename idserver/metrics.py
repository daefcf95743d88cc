"""
Track token engine activity in Prometheus.
"""

from prometheus_client import Counter


tokens_issued = Counter(
    "idp_tokens_issued_total",
    "Total tokens minted by the issuer",
    ["token_type"],
)
grant_requests = Counter(
    "idp_grant_requests_total",
    "Token endpoint outcomes per grant type",
    ["grant_type", "outcome"],
)
validation_failures = Counter(
    "idp_token_validation_failures_total",
    "Token validation failures by internal reason",
    ["reason"],
)
sweeper_removed = Counter(
    "idp_sweeper_removed_total",
    "Entries removed by the pruning sweeper",
    ["kind"],
)
key_rotations = Counter(
    "idp_signing_key_rotations_total",
    "Signing key rotations performed",
)


def track_grant(grant_type: str, outcome: str):
    """
    Track the outcome ("success" or an OAuth error code) of a token request.
    """
    grant_requests.labels(grant_type=grant_type or "missing", outcome=outcome).inc()


def track_removed(kind: str, count: int):
    if count > 0:
        sweeper_removed.labels(kind=kind).inc(count)
