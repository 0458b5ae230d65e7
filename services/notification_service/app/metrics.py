"""Prometheus metrics for the notification dispatch engine."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

_REJECTION_REASONS: Final = (
    "channel_disabled",
    "invalid_config",
    "no_recipient",
    "storage_error",
)

# Dispatch lifecycle -----------------------------------------------------------------------
NOTIFICATION_SENT_TOTAL: Final = Counter(
    "notification_sent_total",
    "Notifications accepted by a provider.",
    labelnames=("channel",),
)

NOTIFICATION_FAILURE_TOTAL: Final = Counter(
    "notification_failure_total",
    "Notifications that exhausted their retries and were marked failed.",
    labelnames=("channel",),
)

NOTIFICATION_RETRY_SCHEDULED_TOTAL: Final = Counter(
    "notification_retry_scheduled_total",
    "Failed attempts that were scheduled for another try.",
    labelnames=("channel",),
)

NOTIFICATION_REJECTED_TOTAL: Final = Counter(
    "notification_rejected_total",
    "Send requests rejected before a ledger entry was written.",
    labelnames=("channel", "reason"),
)

NOTIFICATION_TEMPLATE_FALLBACK_TOTAL: Final = Counter(
    "notification_template_fallback_total",
    "Sends rendered from the compiled-in default templates.",
    labelnames=("channel",),
)

NOTIFICATION_PROVIDER_LATENCY_SECONDS: Final = Histogram(
    "notification_provider_latency_seconds",
    "Time spent waiting on delivery providers.",
    labelnames=("channel", "provider"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

# Retry sweeps -----------------------------------------------------------------------------
NOTIFICATION_RETRIES_PROCESSED_TOTAL: Final = Counter(
    "notification_retries_processed_total",
    "Ledger entries re-attempted by the retry scheduler.",
    labelnames=("channel",),
)

NOTIFICATION_RETRIES_SKIPPED_TOTAL: Final = Counter(
    "notification_retries_skipped_total",
    "Claimed ledger entries released because channel settings were unusable.",
    labelnames=("channel",),
)

NOTIFICATION_CLAIM_CONFLICTS_TOTAL: Final = Counter(
    "notification_claim_conflicts_total",
    "Due entries another sweep claimed first.",
)

# Module events ----------------------------------------------------------------------------
NOTIFICATION_MODULE_REQUESTS_TOTAL: Final = Counter(
    "notification_module_requests_total",
    "Module notify requests by outcome.",
    labelnames=("module", "outcome"),
)


def normalise_rejection_reason(raw_reason: str) -> str:
    """Return a bounded label value for the rejection counter."""

    reason = (raw_reason or "invalid_config").strip().lower().replace(" ", "_")
    if reason not in _REJECTION_REASONS:
        return "invalid_config"
    return reason
