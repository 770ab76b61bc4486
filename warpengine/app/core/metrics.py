############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# metrics.py: Prometheus metrics for warp lifecycle and sweeps
#
############################################################

"""Prometheus metrics."""

from prometheus_client import Counter, Gauge, Histogram

WARP_OPERATIONS = Counter(
    "warpengine_warp_operations_total",
    "Warp lifecycle operations by outcome",
    ["operation", "outcome"],
)
BALANCE_SECONDS_CHARGED = Counter(
    "warpengine_balance_seconds_charged_total",
    "Seconds deducted from user balances at finalization",
)
SWEEP_RUNS = Counter(
    "warpengine_sweep_runs_total",
    "Reconciliation sweeps by result",
    ["result"],
)
SWEEP_CANDIDATES = Counter(
    "warpengine_sweep_candidates_total",
    "Sweep candidates by outcome",
    ["outcome"],
)
SWEEP_DURATION = Histogram(
    "warpengine_sweep_duration_seconds",
    "Wall time of one reconciliation sweep",
)
LAST_SWEEP_TIMESTAMP = Gauge(
    "warpengine_last_sweep_timestamp_seconds",
    "Unix time of the last completed sweep",
)
