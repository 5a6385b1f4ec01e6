"""
metrics.py - Pipeline metrics for monitoring
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest
from functools import wraps
import asyncio
import time

from config import settings

# Metrics definitions
pipeline_requests = Counter(
    'nlp_pipeline_requests_total',
    'Total pipeline requests',
    ['backend', 'stage', 'outcome']
)

pipeline_duration = Histogram(
    'nlp_pipeline_request_duration_seconds',
    'End-to-end pipeline request duration',
    ['backend', 'stage']
)

backend_processing_duration = Histogram(
    'nlp_backend_processing_duration_seconds',
    'Backend process call duration',
    ['backend', 'language']
)

backend_initializations = Counter(
    'nlp_backend_initializations_total',
    'Backend initialization attempts',
    ['backend', 'language', 'outcome']
)

ready_backends = Gauge(
    'nlp_ready_backends',
    'Number of cached backend instances in the ready state'
)


def metrics_enabled() -> bool:
    return bool(settings.get('enable_metrics', True))


def record_initialization(backend: str, language: str, outcome: str):
    if metrics_enabled():
        backend_initializations.labels(backend, language, outcome).inc()


def record_processing(backend: str, language: str, duration: float):
    if metrics_enabled():
        backend_processing_duration.labels(backend, language).observe(duration)


def set_ready_backends(count: int):
    if metrics_enabled():
        ready_backends.set(count)


def track_pipeline(func):
    """Decorator recording outcome and duration of an orchestrator run(request)"""
    @wraps(func)
    async def wrapper(self, request, *args, **kwargs):
        start = time.time()
        outcome = "success"
        backend = request.backend or "auto"
        stage = getattr(request.target_stage, "value", str(request.target_stage))
        try:
            result = await func(self, request, *args, **kwargs)
            backend = result.backend
            return result
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except Exception as e:
            outcome = getattr(getattr(e, "kind", None), "value", "error")
            raise
        finally:
            if metrics_enabled():
                pipeline_requests.labels(backend, stage, outcome).inc()
                pipeline_duration.labels(backend, stage).observe(time.time() - start)
    return wrapper


def get_metrics():
    """Get Prometheus metrics"""
    return generate_latest()
