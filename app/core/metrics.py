"""
Prometheus metrics shared by the HTTP layer and the engine services.
"""

from prometheus_client import Counter, Histogram

# =============================================================================
# HTTP
# =============================================================================

REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

# =============================================================================
# Engine
# =============================================================================

INCIDENT_TRANSITIONS = Counter(
    'incident_transitions_total',
    'Committed incident status transitions',
    ['from_status', 'to_status']
)

MISSION_TRANSITIONS = Counter(
    'mission_transitions_total',
    'Committed mission status transitions',
    ['from_status', 'to_status']
)

ENGINE_ERRORS = Counter(
    'engine_errors_total',
    'Engine errors returned to callers',
    ['kind', 'error_code']
)
