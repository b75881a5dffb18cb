"""
Prometheus metrics for the virtual device fleet.

Usage:
    from fleet_sim.metrics import metrics_snapshot
    print(metrics_snapshot())
"""

from prometheus_client import Counter, Gauge, REGISTRY, generate_latest

# Broker traffic
messages_published_total = Counter(
    'fleetsim_messages_published_total',
    'Messages handed to the broker by simulated devices',
    ['kind', 'channel']
)

messages_dropped_total = Counter(
    'fleetsim_messages_dropped_total',
    'Messages a simulated device could not or did not transmit',
    ['kind', 'reason']
)

# Failure injection
failures_injected_total = Counter(
    'fleetsim_failures_injected_total',
    'Failure effects installed on devices',
    ['failure_kind']
)

active_failures = Gauge(
    'fleetsim_active_failures',
    'Failure effects currently running'
)

# Fleet
fleet_devices = Gauge(
    'fleetsim_fleet_devices',
    'Devices managed by the fleet',
    ['kind']
)


def metrics_snapshot() -> str:
    """Return the Prometheus text exposition for the default registry."""
    return generate_latest(REGISTRY).decode("utf-8")
