from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from gatekeeper.config import settings
from gatekeeper.core.exceptions import ConfigurationError
from gatekeeper.core.hotspot import HotspotDetector
from gatekeeper.core.limiter import limiter
from gatekeeper.core.policy import Dimension, RateLimitPolicy
from gatekeeper.core.statistics import StatisticsAggregator

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    strategy: str
    limiter_configured: bool


class StatisticsResponse(BaseModel):
    bucket_type: str
    time_key: str
    total_requests: int
    allowed_requests: int
    blocked_requests: int
    hotspot_requests: int
    error_requests: int
    block_rate: float
    pass_rate: float
    hotspot_rate: float
    most_active_strategy: str | None
    most_active_key: str | None
    has_anomalies: bool
    strategy_counts: dict[str, int]
    key_counts: dict[str, int]


class RankedEntry(BaseModel):
    value: str
    count: int


class HotspotResponse(BaseModel):
    date: str
    operation: str | None
    values: list[RankedEntry]
    addresses: list[RankedEntry]


def _aggregator(request: Request) -> StatisticsAggregator:
    aggregator = getattr(request.app.state, "aggregator", None)
    if aggregator is None:
        raise HTTPException(status_code=503, detail="statistics are not available")
    return aggregator


def _detector(request: Request) -> HotspotDetector:
    detector = getattr(request.app.state, "detector", None)
    if detector is None:
        raise HTTPException(status_code=503, detail="hotspot detection is not available")
    return detector


@router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(
        status="healthy",
        strategy=settings.rate_limit_strategy.value,
        limiter_configured=limiter.configured,
    )


@router.get("/")
async def root():
    return {
        "service": settings.app_name,
        "message": "Rate limiting service is running",
    }


@router.get("/stats/{bucket_type}/{time_key}", response_model=StatisticsResponse)
async def statistics(bucket_type: str, time_key: str, request: Request):
    try:
        bucket = await _aggregator(request).snapshot(bucket_type, time_key)
    except ConfigurationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return StatisticsResponse(
        **bucket.summary(),
        strategy_counts=bucket.strategy_counts,
        key_counts=bucket.key_counts,
    )


@router.get("/hotspots/{date}", response_model=HotspotResponse)
async def hotspots(
    date: str,
    request: Request,
    top: int = Query(10, ge=1, le=100),
    operation: str | None = None,
):
    values = await _detector(request).top(date, top, operation)
    addresses = await _aggregator(request).hotspot_addresses(date, top)
    return HotspotResponse(
        date=date,
        operation=operation,
        values=[RankedEntry(value=v, count=c) for v, c in values],
        addresses=[RankedEntry(value=a, count=c) for a, c in addresses],
    )


@router.get("/alerts/{category}/{time_key}")
async def alerts(category: str, time_key: str, request: Request):
    try:
        data = await _aggregator(request).alerts(category, time_key)
    except ConfigurationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"category": category, "time_key": time_key, "alerts": data}


@limiter.limit(
    RateLimitPolicy(
        key="demo",
        limit=settings.rate_limit_default,
        period=settings.rate_limit_window,
        algorithm=settings.rate_limit_strategy,
        dimension=Dimension.IP,
        record_async=False,
        name="demo",
    )
)
async def demo_operation(client: str) -> dict:
    return {"message": "Request allowed", "client": client}


@router.get("/test")
async def test_endpoint(request: Request):
    return await demo_operation(request.headers.get("X-User-Id", request.client.host if request.client else "unknown"))
