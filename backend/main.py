import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, get_settings
from database import build_engine, build_session_factory, init_schema
from errors import NotFoundError, PersistenceError, ValidationError
from logging_setup import setup_logging
from modules.identity import new_device_token, normalize_token, token_prefix
from modules.lifecycle import ReportLifecycleManager, VoteApplied, utcnow
from modules.projector import ClientViewProjector
from modules.report_store import ReportStore
from schemas import (
    Category,
    CategoryView,
    CommentCreate,
    CommentView,
    ConfirmRequest,
    ConfirmResponse,
    Location,
    Report,
    ReportCreate,
    ReportSummary,
    ReportView,
    TokenResponse,
)

logger = logging.getLogger(__name__)


def present(manager: ReportLifecycleManager, report: Report, viewer_token: Optional[str] = None) -> ReportView:
    """Read model for the map. Never exposes voter tokens or the full author token."""
    viewer_token = normalize_token(viewer_token)
    return ReportView(
        id=report.id,
        latitude=report.location.latitude,
        longitude=report.location.longitude,
        category=report.category,
        category_label=report.category.label,
        description=report.description,
        created_at=report.created_at,
        expires_at=manager.expires_at(report),
        author=token_prefix(report.author_token),
        confirmations=report.confirmations,
        voted=bool(viewer_token) and viewer_token in report.voter_tokens,
        heat=manager.classify_heat(report),
        comments=[
            CommentView(text=c.text, author=c.author_token_prefix, timestamp=c.timestamp)
            for c in report.comments
        ],
    )


def create_app(settings: Optional[Settings] = None, clock=utcnow) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    engine = build_engine(settings.database_url)
    store = ReportStore(build_session_factory(engine))
    manager = ReportLifecycleManager.from_settings(store, settings, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_schema(engine)
        logger.info("%s started (env=%s)", settings.app_name, settings.env)
        yield
        engine.dispose()
        logger.info("%s stopped", settings.app_name)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Error mapping ---

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.get("/")
    async def root():
        return {"message": f"{settings.app_name} API is online"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/categories", response_model=List[CategoryView])
    async def get_categories():
        return [CategoryView(value=c, label=c.label) for c in Category]

    @app.post("/tokens", response_model=TokenResponse, status_code=201)
    async def create_token():
        return TokenResponse(token=new_device_token())

    # --- Report Endpoints ---
    # Plain `def` handlers run in the threadpool, so a slow store never blocks other clients.

    @app.get("/reports", response_model=List[ReportView])
    def get_reports(token: Optional[str] = None):
        return [present(manager, r, token) for r in manager.visible_reports()]

    @app.get("/reports/summary", response_model=ReportSummary)
    def get_summary():
        return manager.summary()

    @app.get("/reports/{report_id}", response_model=ReportView)
    def get_report(report_id: str, token: Optional[str] = None):
        return present(manager, manager.get_report(report_id), token)

    @app.post("/reports", response_model=ReportView, status_code=201)
    def create_report(report: ReportCreate):
        created = manager.submit_report(
            Location(latitude=report.latitude, longitude=report.longitude),
            report.category,
            report.description,
            report.token,
        )
        return present(manager, created, report.token)

    @app.post("/reports/{report_id}/confirm", response_model=ConfirmResponse)
    def confirm_report(report_id: str, body: ConfirmRequest):
        result = manager.confirm_report(report_id, body.token)
        return ConfirmResponse(
            report=present(manager, result.report, body.token),
            applied=isinstance(result, VoteApplied),
        )

    @app.post("/reports/{report_id}/comments", response_model=ReportView, status_code=201)
    def add_comment(report_id: str, body: CommentCreate):
        updated = manager.add_comment(report_id, body.text, body.token)
        return present(manager, updated, body.token)

    # --- Live feed ---

    @app.websocket("/ws/reports")
    async def reports_feed(websocket: WebSocket, token: Optional[str] = None):
        await websocket.accept()
        projector = ClientViewProjector(manager, refilter_interval=settings.refilter_interval_seconds)

        async def publish(reports: List[Report]):
            views = [present(manager, r, token) for r in reports]
            await websocket.send_json(jsonable_encoder({"active": len(views), "reports": views}))

        feed = asyncio.create_task(projector.run(publish))
        logger.info("Live feed client connected")
        try:
            # Inbound messages are ignored; reading is how a disconnect is noticed.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Live feed client disconnected")
        finally:
            feed.cancel()
            (outcome,) = await asyncio.gather(feed, return_exceptions=True)
            if isinstance(outcome, Exception):
                logger.warning("Live feed stopped with error: %s", outcome)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
