"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.integration_sync.api.v1 import health, integrations, ops

router = APIRouter()

router.include_router(health.router)
router.include_router(integrations.router, prefix="/api/v1")
router.include_router(ops.router, prefix="/api/v1")
