"""
Confusion Engine API Endpoints

Endpoints:
- /events: Ingest behavioral events (batched, non-blocking)
- /feedback: Ingest learner feedback on explanations
- /explanations: Attribute explanations to the heuristics that caused them
- /segments/complete: Close a learner's segment window into the cohort baseline
- /weights, /baselines: Read-only views of the adaptive state
- /scores, /points: Recent analytics records
- /webhooks: Manage confusion-point webhook receivers
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import BaseModel, Field
from typing import List, Dict, Any, Optional
import logging
import uuid

from confusion_engine.adaptive.confusion import (
    AnalyticsSink,
    ConfusionEngine,
    ContentType,
    ExplanationRegistry,
    HeuristicName,
    get_analytics_sink,
    get_confusion_engine,
)
from confusion_engine.core.config import settings
from confusion_engine.services.webhooks import (
    WebhookEndpoint,
    WebhookEventType,
    WebhookService,
    get_webhook_service,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Request/Response Models ==============

class EventBatch(BaseModel):
    """Batch of raw behavioral events; each record is validated by the engine"""
    events: List[Dict[str, Any]] = Field(..., min_length=1)


class FeedbackBatch(BaseModel):
    """Batch of raw feedback signals"""
    signals: List[Dict[str, Any]] = Field(..., min_length=1)


class IngestResponse(BaseModel):
    accepted: int
    rejected: int


class ExplanationInput(BaseModel):
    """Which heuristics produced an explanation"""
    explanation_id: str = Field(..., min_length=1)
    heuristics: List[HeuristicName] = Field(..., min_length=1)
    content_type: ContentType = ContentType.TEXT


class SegmentCompletion(BaseModel):
    segment_id: str = Field(..., min_length=1)
    learner_id: str = Field(..., min_length=1)


class WebhookEndpointInput(BaseModel):
    """Webhook receiver registration"""
    url: str = Field(..., min_length=1)
    events: List[WebhookEventType] = Field(
        default_factory=lambda: [WebhookEventType.CONFUSION_DETECTED, WebhookEventType.CONFUSION_HIGH]
    )
    secret: Optional[str] = None
    max_retries: int = Field(default=3, ge=0, le=10)
    timeout_seconds: int = Field(default=10, ge=1, le=60)


# ============== Ingestion Endpoints ==============

@router.post("/events", response_model=IngestResponse, status_code=status.HTTP_202_ACCEPTED)
async def ingest_events(
    batch: EventBatch,
    engine: ConfusionEngine = Depends(get_confusion_engine)
):
    """
    Queue behavioral events for scoring.

    Malformed records are dropped and reported in ``rejected``; the rest of
    the batch is still accepted.
    """
    accepted = sum(1 for raw in batch.events if engine.submit_event(raw))
    return IngestResponse(accepted=accepted, rejected=len(batch.events) - accepted)


@router.post("/feedback", response_model=IngestResponse, status_code=status.HTTP_202_ACCEPTED)
async def ingest_feedback(
    batch: FeedbackBatch,
    engine: ConfusionEngine = Depends(get_confusion_engine)
):
    """Queue feedback signals; unknown explanation ids count as rejected"""
    accepted = sum(1 for raw in batch.signals if engine.submit_feedback(raw))
    return IngestResponse(accepted=accepted, rejected=len(batch.signals) - accepted)


@router.post("/explanations", status_code=status.HTTP_201_CREATED)
async def register_explanation(
    request: ExplanationInput,
    engine: ConfusionEngine = Depends(get_confusion_engine)
):
    """Record the heuristics behind an explanation so its feedback can be attributed"""
    registry = engine.attribution_lookup
    if not isinstance(registry, ExplanationRegistry):
        raise HTTPException(status_code=409, detail="Explanation attribution is managed externally")

    attribution = registry.register(request.explanation_id, request.heuristics, request.content_type)
    return {
        "explanation_id": attribution.explanation_id,
        "heuristics": [h.value for h in attribution.heuristics],
        "content_type": attribution.content_type.value,
    }


@router.post("/segments/complete")
async def complete_segment(
    request: SegmentCompletion,
    engine: ConfusionEngine = Depends(get_confusion_engine)
):
    """Close a learner's window and fold its dwell/rewind metrics into the cohort baseline"""
    record = engine.complete_segment(request.segment_id, request.learner_id)
    return {
        "segment_id": request.segment_id,
        "learner_id": request.learner_id,
        "baseline_updated": record is not None,
        "sample_size": record.sample_size if record else None,
    }


# ============== Adaptive State ==============

@router.get("/weights")
async def get_weights(
    content_type: Optional[ContentType] = None,
    engine: ConfusionEngine = Depends(get_confusion_engine)
):
    """Current heuristic weight table (read-only)"""
    table = engine.weights.table()
    weights = table.to_list()
    if content_type is not None:
        weights = [w for w in weights if w["content_type"] == content_type.value]
    return {"version": table.version, "weights": weights}


@router.get("/weights/adjustments")
async def get_weight_adjustments(
    limit: int = Query(default=50, ge=1, le=500),
    engine: ConfusionEngine = Depends(get_confusion_engine)
):
    """Audit trail of weight changes"""
    return {
        "adjustments": [
            {
                "heuristic_name": a.heuristic_name.value,
                "content_type": a.content_type.value,
                "previous_weight": a.previous_weight,
                "new_weight": a.new_weight,
                "reason": a.reason,
                "timestamp": a.timestamp.isoformat(),
            }
            for a in engine.weights.adjustments(limit)
        ]
    }


@router.get("/baselines/{segment_id}")
async def get_baseline(
    segment_id: str,
    content_type: Optional[ContentType] = None,
    engine: ConfusionEngine = Depends(get_confusion_engine)
):
    """
    Baseline the evaluator would use for a segment.

    ``is_default`` is true while the segment has fewer samples than the
    serving threshold; ``sample_size`` is the number folded so far.
    """
    baseline = engine.baselines.get(segment_id, content_type)
    stats = engine.baselines.stats(segment_id)
    return {
        "segment_id": segment_id,
        "is_default": baseline.is_default,
        "avg_dwell_time": baseline.avg_dwell_time,
        "avg_rewind_count": baseline.avg_rewind_count,
        "std_dev_dwell_time": stats.std_dev_dwell_time if stats else None,
        "sample_size": stats.sample_size if stats else 0,
        "last_updated": stats.last_updated.isoformat() if stats else None,
    }


@router.post("/baselines/recompute")
async def recompute_baselines(
    engine: ConfusionEngine = Depends(get_confusion_engine)
):
    """Run the full baseline recompute pass now; safe to call repeatedly"""
    replaced = await engine.recompute_baselines_async()
    return {"segments": len(engine.baselines), "replaced": replaced}


# ============== Analytics ==============

@router.get("/scores/recent")
async def recent_scores(
    learner_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=1000),
    analytics: AnalyticsSink = Depends(get_analytics_sink)
):
    scores = analytics.recent_scores(learner_id=learner_id, limit=limit)
    return {"scores": [s.model_dump(mode="json") for s in scores]}


@router.get("/points/recent")
async def recent_points(
    learner_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=1000),
    analytics: AnalyticsSink = Depends(get_analytics_sink)
):
    points = analytics.recent_points(learner_id=learner_id, limit=limit)
    return {"points": [p.model_dump(mode="json") for p in points]}


@router.get("/stats")
async def engine_stats(
    engine: ConfusionEngine = Depends(get_confusion_engine)
):
    return engine.stats()


# ============== Webhooks ==============

@router.post("/webhooks", status_code=status.HTTP_201_CREATED)
async def register_webhook(
    request: WebhookEndpointInput,
    service: WebhookService = Depends(get_webhook_service)
):
    """Register a receiver for confusion points"""
    endpoint = WebhookEndpoint(
        id=f"wh_{uuid.uuid4().hex[:12]}",
        url=request.url,
        secret=request.secret or settings.WEBHOOK_SECRET,
        events=list(request.events),
        max_retries=request.max_retries,
        timeout_seconds=request.timeout_seconds,
    )
    endpoint_id = service.register_endpoint(endpoint)
    return {"id": endpoint_id, "url": endpoint.url, "events": [e.value for e in endpoint.events]}


@router.get("/webhooks")
async def list_webhooks(
    active_only: bool = False,
    service: WebhookService = Depends(get_webhook_service)
):
    return {"endpoints": service.list_endpoints(active_only=active_only), "stats": service.get_stats()}


@router.delete("/webhooks/{endpoint_id}")
async def delete_webhook(
    endpoint_id: str,
    service: WebhookService = Depends(get_webhook_service)
):
    if not service.delete_endpoint(endpoint_id):
        raise HTTPException(status_code=404, detail="Webhook endpoint not found")
    return {"deleted": endpoint_id}
