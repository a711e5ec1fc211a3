"""
Prometheus metrics for the disbursement core.

Tracks:
- Disbursement status transitions
- Collection outcomes
- Idempotency cache hits
- Provider API calls, errors and latency
- Token refreshes
- Webhook events
- Background sweep runs
"""
from prometheus_client import Counter, Gauge, Histogram

# Disbursement metrics
disbursement_transitions_total = Counter(
    "disbursement_transitions_total",
    "Total disbursement status transitions",
    ["provider", "from_status", "to_status"],
)

disbursement_rejected_transitions_total = Counter(
    "disbursement_rejected_transitions_total",
    "Status changes rejected as illegal",
    ["source", "from_status", "to_status"],
)

disbursement_retries_scheduled_total = Counter(
    "disbursement_retries_scheduled_total",
    "Retries scheduled for failed or timed-out disbursements",
    ["provider"],
)

# Collection metrics
collection_transitions_total = Counter(
    "collection_transitions_total",
    "Collections settled, by outcome",
    ["provider", "to_status", "source"],
)

# Idempotency metrics
idempotency_lookups_total = Counter(
    "idempotency_lookups_total",
    "Idempotency lookups by outcome",
    ["outcome"],  # redis_hit, database_hit, miss, conflict, expired
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total provider API errors",
    ["provider", "error_type"],  # retryable, terminal, timeout, auth
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Token metrics
token_refreshes_total = Counter(
    "provider_token_refreshes_total",
    "Provider token refreshes",
    ["provider", "grant", "status"],
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by outcome",
    ["provider", "outcome"],  # processed, skipped, failed, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Sweep metrics
sweep_runs_total = Counter(
    "sweep_runs_total",
    "Background sweep runs",
    ["task", "status"],
)

sweep_records_total = Counter(
    "sweep_records_total",
    "Records handled by background sweeps",
    ["task"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transition(provider: str, from_status: str, to_status: str) -> None:
        """Record a committed status transition."""
        disbursement_transitions_total.labels(
            provider=provider, from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_rejected_transition(source: str, from_status: str, to_status: str) -> None:
        """Record an illegal transition that was refused."""
        disbursement_rejected_transitions_total.labels(
            source=source, from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_retry_scheduled(provider: str) -> None:
        """Record a scheduled retry."""
        disbursement_retries_scheduled_total.labels(provider=provider).inc()

    @staticmethod
    def record_collection_transition(provider: str, to_status: str, source: str) -> None:
        """Record a collection leaving PENDING."""
        collection_transitions_total.labels(
            provider=provider, to_status=to_status, source=source
        ).inc()

    @staticmethod
    def record_idempotency_lookup(outcome: str) -> None:
        """Record idempotency lookup outcome."""
        idempotency_lookups_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_provider_error(provider: str, error_type: str) -> None:
        """Record provider API error."""
        provider_api_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_token_refresh(provider: str, grant: str, status: str) -> None:
        """Record a token refresh."""
        token_refreshes_total.labels(provider=provider, grant=grant, status=status).inc()

    @staticmethod
    def record_webhook_event(provider: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_total.labels(provider=provider, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_sweep(task: str, status: str, records: int = 0) -> None:
        """Record a background sweep run."""
        sweep_runs_total.labels(task=task, status=status).inc()
        if records:
            sweep_records_total.labels(task=task).inc(records)


# Export singleton instance
metrics = MetricsCollector()
