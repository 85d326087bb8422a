"""Prometheus metrics."""

from prometheus_client import Counter, Gauge, Histogram

# Chain writes
ledger_appends = Counter(
    "audit_ledger_appends_total",
    "Events appended to the chain",
    ["result"],
)

# Verification
chain_verifications = Counter(
    "audit_ledger_verifications_total",
    "Chain verification runs",
    ["status"],
)

chain_verification_duration = Histogram(
    "audit_ledger_verification_duration_seconds",
    "Chain verification duration",
)

chain_broken = Gauge(
    "audit_ledger_chain_broken",
    "1 if the most recent verification found a break",
)

# Offline merge
offline_merges = Counter(
    "audit_ledger_offline_merges_total",
    "Offline merge attempts",
    ["status"],
)

offline_merge_events = Counter(
    "audit_ledger_offline_merge_events_total",
    "Offline merge candidate outcomes",
    ["outcome"],  # merged, duplicate, conflict, rehashed
)

# Archive
archive_exports = Counter(
    "audit_ledger_archive_exports_total",
    "Archive export attempts",
    ["status"],
)

archive_export_bytes = Counter(
    "audit_ledger_archive_export_bytes_total",
    "Compressed bytes written to archive storage",
)

replication_checks = Counter(
    "audit_ledger_replication_checks_total",
    "Archive replication status checks",
    ["status"],
)
