from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request

from ..models.dashboard import DashboardMetrics
from ..services.dashboard import DashboardService

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/metrics", response_model=DashboardMetrics)
async def dashboard_metrics(
    request: Request,
    user_id: str | None = Query(None, alias="userId"),
    start: datetime | None = Query(None, alias="from"),
    end: datetime | None = Query(None, alias="to"),
    range_name: str | None = Query(None, alias="range", description="24h, 7d, 30d or all"),
) -> DashboardMetrics:
    service: DashboardService = request.app.state.dashboard_service
    try:
        return service.metrics(user_id=user_id, start=start, end=end, range_name=range_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
