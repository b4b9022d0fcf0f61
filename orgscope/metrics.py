from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest


scoped_cache_hits_total = Counter(
    "orgscope_scoped_cache_hits_total",
    "Scoped cache hits by resource",
    ["resource"],
)

scoped_cache_misses_total = Counter(
    "orgscope_scoped_cache_misses_total",
    "Scoped cache misses by resource",
    ["resource"],
)

scoped_cache_ttl_selected_total = Counter(
    "orgscope_scoped_cache_ttl_selected_total",
    "Adaptive TTL bucket selections",
    ["resource", "bucket"],
)

scoped_cache_invalidated_keys_total = Counter(
    "orgscope_scoped_cache_invalidated_keys_total",
    "Cache keys removed by tag invalidation",
)

context_cache_hit_total = Counter(
    "orgscope_context_cache_hit_total",
    "User context cache hits",
)

context_cache_miss_total = Counter(
    "orgscope_context_cache_miss_total",
    "User context cache misses",
)

permission_denied_total = Counter(
    "orgscope_permission_denied_total",
    "Denied permission decisions by operation and actor role",
    ["operation", "role"],
)

scope_resolutions_total = Counter(
    "orgscope_scope_resolutions_total",
    "Scope resolutions by role and resource",
    ["role", "resource"],
)

hierarchy_cycles_detected_total = Counter(
    "orgscope_hierarchy_cycles_detected_total",
    "Cyclic org-unit links detected during traversal",
)


def _resource_label(resource: str | None) -> str:
    return resource or "unknown"


def observe_cache_hit(resource: str | None) -> None:
    scoped_cache_hits_total.labels(resource=_resource_label(resource)).inc()


def observe_cache_miss(resource: str | None) -> None:
    scoped_cache_misses_total.labels(resource=_resource_label(resource)).inc()


def observe_ttl_bucket(resource: str | None, bucket: str) -> None:
    scoped_cache_ttl_selected_total.labels(resource=_resource_label(resource), bucket=bucket).inc()


def observe_invalidated_keys(count: int) -> None:
    if count > 0:
        scoped_cache_invalidated_keys_total.inc(count)


def observe_context_cache_hit() -> None:
    context_cache_hit_total.inc()


def observe_context_cache_miss() -> None:
    context_cache_miss_total.inc()


def observe_permission_denied(operation: str, role: str) -> None:
    permission_denied_total.labels(operation=operation, role=role).inc()


def observe_scope_resolution(role: str, resource: str) -> None:
    scope_resolutions_total.labels(role=role, resource=resource).inc()


def observe_hierarchy_cycle() -> None:
    hierarchy_cycles_detected_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
