"""
Prometheus metrics for the reconciliation engine.

Organized into: orders, position, reconciliation, governor, stream, ledger,
lifecycle. Every metric is labelled by instrument except the governor ones,
which are shared by all instruments on a venue.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class RichMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Orders ===
        self.orders_registered = Counter(
            'orders_registered_total',
            'Orders registered in the order ledger',
            labelnames=['instrument', 'side'],
            registry=reg
        )
        self.orders_duplicate_rejected = Counter(
            'orders_duplicate_rejected_total',
            'Placements rejected because an identical order is pending',
            labelnames=['instrument'],
            registry=reg
        )
        self.fills_applied = Counter(
            'fills_applied_total',
            'Fill deltas applied (partial and final)',
            labelnames=['instrument', 'side', 'kind'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'orders_cancelled_total',
            'Orders retired without a full fill',
            labelnames=['instrument'],
            registry=reg
        )
        self.pending_orders = Gauge(
            'pending_orders',
            'Orders awaiting a terminal state',
            labelnames=['instrument'],
            registry=reg
        )

        # === Position ===
        self.position_quantity = Gauge(
            'position_quantity',
            'Derived position quantity (base asset)',
            labelnames=['instrument'],
            registry=reg
        )
        self.position_amount = Gauge(
            'position_amount',
            'Derived position cost (quote asset)',
            labelnames=['instrument'],
            registry=reg
        )
        self.position_average_price = Gauge(
            'position_average_price',
            'Average entry price',
            labelnames=['instrument'],
            registry=reg
        )
        self.last_price = Gauge(
            'last_price',
            'Last observed market price',
            labelnames=['instrument', 'source'],
            registry=reg
        )

        # === Reconciliation ===
        self.reconcile_runs = Counter(
            'reconcile_runs_total',
            'Reconciliation passes by outcome',
            labelnames=['instrument', 'action'],
            registry=reg
        )
        self.reconcile_drift = Gauge(
            'reconcile_drift',
            'Last balance minus local quantity',
            labelnames=['instrument'],
            registry=reg
        )
        self.reconcile_duration_ms = Histogram(
            'reconcile_duration_ms',
            'Fetch plus apply duration (milliseconds)',
            labelnames=['instrument'],
            buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000],
            registry=reg
        )

        # === Governor ===
        self.governor_requests = Counter(
            'governor_requests_total',
            'Remote calls completed by the governor',
            labelnames=['priority', 'outcome'],
            registry=reg
        )
        self.governor_queue_depth = Gauge(
            'governor_queue_depth',
            'Requests waiting per priority',
            labelnames=['priority'],
            registry=reg
        )
        self.governor_limit_per_second = Gauge(
            'governor_limit_per_second',
            'Current adaptive per-second ceiling',
            registry=reg
        )
        self.governor_limit_per_minute = Gauge(
            'governor_limit_per_minute',
            'Current adaptive per-minute ceiling',
            registry=reg
        )
        self.circuit_open = Gauge(
            'circuit_open',
            'Circuit state (0=closed, 1=half-open, 2=open)',
            registry=reg
        )

        # === Stream ===
        self.stream_connected = Gauge(
            'stream_connected',
            'Push feed connected (1) or not (0)',
            labelnames=['instrument'],
            registry=reg
        )
        self.stream_degraded = Gauge(
            'stream_degraded',
            'REST polling fallback active (1=degraded)',
            labelnames=['instrument'],
            registry=reg
        )
        self.stream_reconnects = Counter(
            'stream_reconnects_total',
            'Push feed reconnects',
            labelnames=['instrument'],
            registry=reg
        )

        # === Ledger ===
        self.ledger_appends = Counter(
            'ledger_appends_total',
            'Domain events durably recorded',
            labelnames=['instrument', 'action'],
            registry=reg
        )
        self.ledger_write_errors = Counter(
            'ledger_write_errors_total',
            'Event ledger write failures',
            labelnames=['instrument'],
            registry=reg
        )
        self.ledger_skipped_records = Gauge(
            'ledger_skipped_records',
            'Malformed records skipped during the last replay',
            labelnames=['instrument'],
            registry=reg
        )

        # === Lifecycle ===
        self.engine_started = Counter(
            'engine_started_total',
            'Engine instances started',
            labelnames=['instrument'],
            registry=reg
        )
        self.engine_stopped = Counter(
            'engine_stopped_total',
            'Engine instances stopped',
            labelnames=['instrument'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        return self.registry

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose /metrics on `port` from a daemon thread."""
        start_http_server(port, addr=addr, registry=self.registry)
