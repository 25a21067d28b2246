from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from .core.config import Settings, get_settings
from .orchestration.orchestrator import LegalOrchestrator
from .queue.manager import TaskQueueManager
from .services.cache import ResultCache


async def get_app_settings() -> Settings:
    return get_settings()


async def get_orchestrator(request: Request) -> LegalOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Orchestrator not initialised")
    return orchestrator


async def get_task_queue(orchestrator: LegalOrchestrator = Depends(get_orchestrator)) -> TaskQueueManager:
    return orchestrator.tasks


async def get_result_cache(orchestrator: LegalOrchestrator = Depends(get_orchestrator)) -> ResultCache:
    return orchestrator.cache
