from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from apiary_api.core.settings import settings

router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(request: Request) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded"] = "ready"

    workers = (
        ("payment_reconciliation", "reconciliation_sweeper", settings.reconciliation_worker_enabled),
        ("partner_export", "partner_export_worker", settings.partner_export_worker_enabled),
    )
    for name, state_attr, enabled in workers:
        worker = getattr(request.app.state, state_attr, None)
        if not enabled or worker is None:
            components[name] = ComponentStatus(status="disabled", detail=f"{name} worker disabled via settings")
            continue
        running = bool(getattr(worker, "is_running", False))
        if not running:
            status = "degraded"
        components[name] = ComponentStatus(
            status="ready" if running else "starting",
            detail=None if running else f"{name} worker not running",
        )

    return ReadinessPayload(status=status, components=components)
