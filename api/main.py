"""
FastAPI Application: HTTP surface of the flow engine.

Provides:
- Inbound routing for the webhook handler (resume / start / decline)
- Direct start / continue / transfer operations
- Flow seeding and validation
- Stateless flow preview (simulator)
- Execution listing for debugging

Components are built once in the lifespan handler and kept on ``app.state``;
``create_app`` accepts prebuilt stores and collaborators so tests can run the
whole surface against in-memory backends.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from backend.connector import CRMConnector, create_crm_connector
from channels.base import MessageDelivery
from channels.outbox_adapter import OutboxDelivery
from channels.whatsapp_adapter import WhatsAppCloudDelivery
from config.settings import Settings, get_settings
from core.errors import (
    AlreadyActiveError, ExecutionNotActiveError, ExecutionNotFoundError,
    NoActiveExecutionError, StoreError,
)
from core.executor import FlowExecutor
from core.orchestrator import InteractiveFlowRouter
from core.simulator import FlowSimulator
from core.triggers import TriggerResolver
from core.validator import validate_flow
from database.session import init_db
from database.store_factory import Stores, create_stores
from models.schemas import InteractiveFlow, ServicingMode
from utils.logging import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    stores: Stores
    delivery: MessageDelivery
    crm: CRMConnector
    executor: FlowExecutor
    resolver: TriggerResolver
    router: InteractiveFlowRouter

    async def close(self):
        await self.delivery.shutdown()
        await self.crm.close()
        await self.stores.close()


def build_services(settings: Settings, stores: Optional[Stores] = None,
                   delivery: Optional[MessageDelivery] = None,
                   crm: Optional[CRMConnector] = None) -> Services:
    stores = stores or create_stores(settings.database, settings.engine, debug=settings.debug)
    if delivery is None:
        if settings.whatsapp.access_token and settings.whatsapp.phone_number_id:
            delivery = WhatsAppCloudDelivery(settings.whatsapp)
        else:
            logger.warning("using_outbox_delivery", reason="whatsapp credentials not configured")
            delivery = OutboxDelivery()
    crm = crm or create_crm_connector(settings.crm)

    executor = FlowExecutor(stores.flows, stores.executions, delivery, crm, settings.engine)
    resolver = TriggerResolver(stores.flows, stores.executions)
    return Services(
        stores=stores, delivery=delivery, crm=crm, executor=executor, resolver=resolver,
        router=InteractiveFlowRouter(executor, resolver),
    )


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ProcessMessageRequest(BaseModel):
    tenant_id: str
    contact: str
    content: str = ""
    is_interactive_reply: bool = False
    interactive_response_id: Optional[str] = None
    message_id: Optional[str] = None


class StartFlowRequest(BaseModel):
    tenant_id: str
    contact: str


class ContinueFlowRequest(BaseModel):
    tenant_id: str
    contact: str
    user_input: str = ""
    choice_id: Optional[str] = None
    message_id: Optional[str] = None


class TransferRequest(BaseModel):
    mode: ServicingMode


class SimulationChoice(BaseModel):
    choice_id: str
    target_block_id: Optional[str] = None
    choice_title: Optional[str] = None


class SimulateRequest(BaseModel):
    flow: dict[str, Any]
    choices: list[SimulationChoice] = []
    variables: dict[str, Any] = {}
    start_block_id: Optional[str] = None


def _parse_flow(data: dict[str, Any]) -> InteractiveFlow:
    try:
        return InteractiveFlow.model_validate(data)
    except ValidationError as e:
        raise HTTPException(422, e.errors(include_url=False, include_context=False)) from e


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None, stores: Optional[Stores] = None,
               delivery: Optional[MessageDelivery] = None,
               crm: Optional[CRMConnector] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        configure_logging(cfg.logging.level, cfg.logging.json)
        services = build_services(cfg, stores, delivery, crm)
        if services.stores.engine is not None:
            await init_db(services.stores.engine)
        app.state.settings = cfg
        app.state.services = services
        logger.info("flowrunner_started", store_backend=cfg.database.store_backend,
                    delivery=type(services.delivery).__name__)
        yield
        await services.close()
        logger.info("flowrunner_stopped")

    app = FastAPI(
        title="FlowRunner API",
        description="Interactive flow execution engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


def _services(request: Request) -> Services:
    return request.app.state.services


def _register_routes(app: FastAPI):

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        services = _services(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "delivery": await services.delivery.health_check(),
        }

    # ══════════════════════════════════════════════════════════
    #  INBOUND ROUTING
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/flows/process-message")
    async def process_message(req: ProcessMessageRequest, request: Request):
        outcome = await _services(request).router.process_message(
            req.tenant_id, req.contact, req.content,
            is_interactive_reply=req.is_interactive_reply,
            interactive_response_id=req.interactive_response_id,
            message_id=req.message_id,
        )
        return outcome.to_dict()

    # ══════════════════════════════════════════════════════════
    #  FLOWS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/flows")
    async def upsert_flow(flow: dict[str, Any], request: Request):
        parsed = _parse_flow(flow)
        errors = validate_flow(parsed)
        if errors:
            raise HTTPException(422, [e.model_dump() for e in errors])
        saved = await _services(request).stores.flows.upsert_flow(parsed)
        return {"id": saved.id, "name": saved.name}

    @app.post("/api/v1/flows/validate")
    async def validate(flow: dict[str, Any]):
        errors = validate_flow(_parse_flow(flow))
        return {"valid": not errors, "errors": [e.model_dump() for e in errors]}

    @app.post("/api/v1/flows/{flow_id}/start")
    async def start_flow(flow_id: str, req: StartFlowRequest, request: Request):
        try:
            disposition = await _services(request).executor.start_flow(flow_id, req.tenant_id, req.contact)
        except AlreadyActiveError as e:
            raise HTTPException(409, str(e)) from e
        return disposition.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  EXECUTIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/executions/continue")
    async def continue_flow(req: ContinueFlowRequest, request: Request):
        try:
            disposition = await _services(request).executor.continue_flow(
                req.tenant_id, req.contact, req.user_input,
                choice_id=req.choice_id, message_id=req.message_id,
            )
        except NoActiveExecutionError as e:
            raise HTTPException(404, str(e)) from e
        return disposition.model_dump(mode="json")

    @app.post("/api/v1/executions/{execution_id}/transfer")
    async def transfer(execution_id: str, req: TransferRequest, request: Request):
        executor = _services(request).executor
        if req.mode == ServicingMode.FLOW:
            raise HTTPException(400, "mode must be bot or human")
        try:
            if req.mode == ServicingMode.BOT:
                disposition = await executor.transfer_to_bot(execution_id)
            else:
                disposition = await executor.transfer_to_human(execution_id)
        except ExecutionNotFoundError as e:
            raise HTTPException(404, str(e)) from e
        except ExecutionNotActiveError as e:
            raise HTTPException(409, str(e)) from e
        return disposition.model_dump(mode="json")

    @app.get("/api/v1/executions")
    async def list_executions(request: Request, tenant_id: str, contact: Optional[str] = None,
                              limit: int = Query(50, ge=1, le=500)):
        try:
            executions = await _services(request).stores.executions.list_executions(
                tenant_id, contact, limit
            )
        except StoreError as e:
            raise HTTPException(503, str(e)) from e
        return {"executions": [e.model_dump(mode="json") for e in executions]}

    @app.get("/api/v1/executions/{execution_id}")
    async def get_execution(execution_id: str, request: Request):
        execution = await _services(request).stores.executions.get(execution_id)
        if execution is None:
            raise HTTPException(404, "Execution not found")
        return execution.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  PREVIEW
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/simulate")
    async def simulate(req: SimulateRequest, request: Request):
        flow = _parse_flow(req.flow)
        simulator = FlowSimulator(flow, step_budget=request.app.state.settings.engine.step_budget,
                                  variables=req.variables)
        steps = simulator.run(req.start_block_id)
        for choice in req.choices:
            if steps[-1].terminal:
                break
            steps.append(simulator.handle_user_choice(choice.choice_id, choice.target_block_id,
                                                      choice.choice_title))
            while steps[-1].auto_advance and steps[-1].next_block_id:
                steps.append(simulator.execute_block(steps[-1].next_block_id))
        return {
            "steps": [s.model_dump(mode="json") for s in steps],
            "state": simulator.get_state(),
        }


app = create_app()
