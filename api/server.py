"""
Roly API Server - FastAPI status/control surface

Endpoints:
- GET  /health              Liveness + heartbeat health
- GET  /status              Agent loop + heartbeat status
- GET  /context             Current AgentContext snapshot
- GET  /turns               Recent turns (newest first)
- GET  /bounties            Known bounties (status/source filter)
- POST /turn/manual         Operator-driven turn (guarded input)
- POST /heartbeat/force     Run one heartbeat now
- POST /tools/{name}        Capability-gated tool execution

POST routes need `Authorization: Bearer <ROLY_API_TOKEN>` and are disabled
while no token is configured. CORS is closed unless CORS_ORIGINS lists origins.
"""

import os
import hmac
import time
import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from bounties.models import BountySource, BountyStatus
from bounties.store import BountyStore
from core.agent_loop import AgentLoop
from core.context import ContextBuilder
from core.heartbeat import HeartbeatDaemon
from core.injection_defense import InjectionBlocked
from core.store import StateStore

logger = logging.getLogger("roly.api")


# ============================================================
# MODELS
# ============================================================

class ManualTurnRequest(BaseModel):
    input: str = Field(..., min_length=1, max_length=5000)


class ToolRequest(BaseModel):
    # free-form text ("recipient, 1.5") or named fields
    args: Optional[Any] = None


class TurnResponse(BaseModel):
    id: str
    timestamp: float
    thought: str
    observation: str
    action: Optional[dict] = None
    reflection: Optional[str] = None
    survival_tier: Optional[str] = None


class ToolResponse(BaseModel):
    tool: str
    success: bool
    output: Any = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    agent_running: bool
    heartbeat_healthy: bool
    timestamp: float


def check_bearer(api_token: str, authorization: Optional[str]):
    if not api_token:
        raise HTTPException(503, "Control endpoints disabled: ROLY_API_TOKEN not set")
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Missing auth token")
    if not hmac.compare_digest(authorization[len("Bearer "):].encode(), api_token.encode()):
        raise HTTPException(401, "Invalid auth token")


def create_app(
    agent: AgentLoop,
    heartbeat: HeartbeatDaemon,
    context_builder: ContextBuilder,
    store: StateStore,
    bounty_store: BountyStore,
    api_token: str = "",
) -> FastAPI:
    app = FastAPI(
        title="roly - autonomous agent",
        description="An agent earning its own survival on Solana.",
        version="0.1.0",
    )

    # CORS: closed by default; "*" only when CORS_ORIGINS asks for it
    cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )
    if not api_token:
        logger.warning("ROLY_API_TOKEN not set - control endpoints are disabled")

    async def require_operator(authorization: Optional[str] = Header(None)):
        check_bearer(api_token, authorization)

    operator = [Depends(require_operator)]

    # ============================================================
    # READ
    # ============================================================

    @app.get("/health", response_model=HealthResponse)
    async def health():
        healthy = heartbeat.is_healthy()
        return HealthResponse(
            status="ok" if agent.is_running and healthy else "degraded",
            agent_running=agent.is_running,
            heartbeat_healthy=healthy,
            timestamp=time.time(),
        )

    @app.get("/status")
    async def status():
        return {
            "agent": agent.get_status(),
            "heartbeat": heartbeat.get_status(),
            "heartbeat_stats": heartbeat.get_stats(),
            "store": store.get_info(),
        }

    @app.get("/context")
    async def context():
        ctx = await context_builder.build()
        return ctx.to_dict()

    @app.get("/turns", response_model=list[TurnResponse])
    async def turns(limit: int = Query(10, ge=1, le=100)):
        return [TurnResponse(**t.to_dict()) for t in store.get_recent_turns(limit)]

    @app.get("/bounties")
    async def bounties(
        status: Optional[str] = None,
        source: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
    ):
        try:
            status_filter = BountyStatus(status) if status else None
            source_filter = BountySource(source) if source else None
        except ValueError as e:
            raise HTTPException(400, str(e))
        found = bounty_store.get_bounties(status=status_filter, source=source_filter, limit=limit)
        return {
            "count": len(found),
            "by_status": bounty_store.count_by_status(),
            "bounties": [b.to_dict() for b in found],
        }

    # ============================================================
    # CONTROL
    # ============================================================

    @app.post("/turn/manual", response_model=TurnResponse, dependencies=operator)
    async def manual_turn(req: ManualTurnRequest):
        try:
            turn = await agent.execute_manual_turn(req.input)
        except InjectionBlocked as e:
            logger.warning(f"Manual turn blocked: {e.analysis.risk_level}")
            raise HTTPException(400, {
                "error": "Input blocked by injection defense",
                "analysis": e.analysis.to_dict(),
            })
        except Exception as e:
            logger.error(f"Manual turn failed: {e}")
            raise HTTPException(502, f"Turn failed: {e}")
        return TurnResponse(**turn.to_dict())

    @app.post("/heartbeat/force", dependencies=operator)
    async def force_heartbeat():
        results = await heartbeat.force_heartbeat()
        if results is None:
            raise HTTPException(409, "Heartbeat skipped (in flight or failed)")
        return {
            "tasks": [r.to_dict() for r in results],
            "success_rate": sum(1 for r in results if r.success) / len(results) if results else 0.0,
        }

    @app.post("/tools/{name}", response_model=ToolResponse, dependencies=operator)
    async def run_tool(name: str, req: ToolRequest):
        result = await agent.execute_tool(name, req.args)
        return ToolResponse(tool=name, **result.to_dict())

    return app
