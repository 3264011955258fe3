"""V1 API router -- aggregates all endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.chatbot.api.v1 import agents, health, intake

router = APIRouter()

router.include_router(health.router)
router.include_router(intake.router)
router.include_router(agents.router)
