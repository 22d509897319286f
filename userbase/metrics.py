"""Prometheus counters for session checks, challenges and identity links."""

from prometheus_client import CollectorRegistry, Counter, generate_latest

registry = CollectorRegistry()

SESSION_CHECKS = Counter(
    "userbase_session_checks_total",
    "Session validation outcomes",
    ["outcome"],
    registry=registry,
)
CHALLENGES_ISSUED = Counter(
    "userbase_challenges_issued_total",
    "Ownership challenges issued",
    ["type"],
    registry=registry,
)
IDENTITY_LINKS = Counter(
    "userbase_identity_links_total",
    "Identity link attempts by path and outcome",
    ["path", "outcome"],
    registry=registry,
)


def render_latest() -> bytes:
    return generate_latest(registry)
