"""Prometheus scrape endpoint for the in-process counters."""

from fastapi import APIRouter, Response

from finquest.core.metrics import METRICS


router = APIRouter(tags=["metrics"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


@router.get("/metrics")
def metrics_endpoint():
    """HTTP, transition, generator, conflict and reward counters in text exposition format."""
    return Response(content=METRICS.export_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
