"""FastAPI server for tracker webhooks and read-only coordination state."""

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from ..core.manager import TeammateManager
from ..core.models import EpicState
from ..errors import NotFoundError
from ..integrations.github.webhooks import InvalidSignature, WebhookReceiver

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    epics: int
    agents: int
    pending_events: int


class WebhookResponse(BaseModel):
    queued: bool
    delivery_id: str


class EpicSummary(BaseModel):
    id: str
    title: str
    state: EpicState
    current_phase: Optional[str] = None
    version: int


def create_app(manager: TeammateManager) -> FastAPI:
    """Create FastAPI application with all routes."""
    app = FastAPI(
        title="Teammate Agents",
        description="Webhook intake and coordination state",
        version="0.1.0",
    )
    receiver = WebhookReceiver(manager.events, secret=manager.config.github.webhook_secret)
    register_routes(app, manager, receiver)
    return app


def register_routes(app: FastAPI, manager: TeammateManager, receiver: WebhookReceiver):
    """Register all API routes."""

    @app.get("/api/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok",
            epics=len(manager.coordinator.epic_ids()),
            agents=len(manager.registry),
            pending_events=manager.events.pending(),
        )

    @app.get("/api/epics", response_model=List[EpicSummary])
    async def list_epics(state: Optional[EpicState] = Query(default=None)):
        return [
            EpicSummary(
                id=e.id,
                title=e.title,
                state=e.state,
                current_phase=e.current_phase,
                version=e.version,
            )
            for e in manager.list_epics(state)
        ]

    @app.get("/api/epics/{epic_id}")
    async def get_epic(epic_id: str) -> Dict[str, Any]:
        try:
            epic = manager.get_epic(epic_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail=f"Epic {epic_id} not found")
        return {
            "epic": epic.model_dump(mode="json"),
            "progress": manager.progress_report(epic_id).model_dump(mode="json"),
        }

    @app.post("/webhooks/github", response_model=WebhookResponse)
    async def github_webhook(request: Request):
        raw_body = await request.body()
        event_name = request.headers.get("X-GitHub-Event", "")
        delivery_id = request.headers.get("X-GitHub-Delivery", "")
        signature = request.headers.get("X-Hub-Signature-256")

        if not delivery_id:
            raise HTTPException(status_code=400, detail="Missing X-GitHub-Delivery header")
        try:
            payload = json.loads(raw_body or b"{}")
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Body is not valid JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")

        try:
            queued = receiver.handle(event_name, delivery_id, payload, raw_body, signature)
        except InvalidSignature as e:
            logger.warning(str(e))
            raise HTTPException(status_code=401, detail="Invalid signature")
        return WebhookResponse(queued=queued, delivery_id=delivery_id)


async def serve(manager: TeammateManager, port: int, host: str = "0.0.0.0") -> None:
    """Run the server inside an existing event loop."""
    import uvicorn

    app = create_app(manager)
    logger.info(f"Serving webhooks at http://{host}:{port}/webhooks/github")
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    await server.serve()
