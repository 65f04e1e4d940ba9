"""Prometheus metric definitions for the bundle pipeline."""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Info

# ── Application info ────────────────────────────────────────────────
app_info = Info("manual_service_bundler", "Manual Service Bundler application metadata")

# ── Bundle generation ───────────────────────────────────────────────
bundle_generations_total = Counter(
    "bundle_generations_total",
    "Bundle generation runs",
    ["outcome"],
)

bundle_generation_seconds = Histogram(
    "bundle_generation_seconds",
    "Time spent building a bundle (excluding input loading)",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# ── Transfer to the Web Modeler ─────────────────────────────────────
transfer_file_uploads_total = Counter(
    "transfer_file_uploads_total",
    "Files uploaded to the transfer target, by final outcome",
    ["kind", "status"],
)

transfer_upload_retries_total = Counter(
    "transfer_upload_retries_total",
    "Upload attempts that failed and were retried",
)

transfer_runs_total = Counter(
    "transfer_runs_total",
    "Completed transfer runs",
    ["status"],
)

oauth_token_refreshes_total = Counter(
    "oauth_token_refreshes_total",
    "OAuth client-credentials token requests",
    ["status"],
)

# ── Export packaging ────────────────────────────────────────────────
export_packages_total = Counter(
    "export_packages_total",
    "Export packaging runs",
    ["status"],
)

# ── Diagram generation ──────────────────────────────────────────────
diagram_generations_total = Counter(
    "diagram_generations_total",
    "Generated original diagrams, by kind and source",
    ["kind", "source"],
)
