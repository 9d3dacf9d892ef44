from fastapi import APIRouter, Request
from datetime import datetime, timezone

router = APIRouter()
_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def get_health():
    """
    Standard health check endpoint.
    """
    return {"status": "ok", "service": "socflow-backend"}


@router.get("/api/v1/health")
async def get_health_v1(request: Request):
    """
    Health check with uptime, enabled agents and Ollama status when assist mode is on.
    """
    now = datetime.now(timezone.utc)
    pipeline = request.app.state.pipeline
    agent_names = pipeline.orchestrator.registry.names()

    llm = next((a.llm for a in pipeline.orchestrator.registry.agents() if a.llm_assist), None)
    ollama = {"enabled": llm is not None}
    if llm is not None:
        ollama["ready"] = await llm.check_ready()
        ollama["model"] = llm.model

    return {
        "status": "ok",
        "service": "socflow-backend",
        "server_time": now.isoformat(),
        "uptime_seconds": int((now - _STARTED_AT).total_seconds()),
        "agents": agent_names,
        "ollama": ollama,
    }
