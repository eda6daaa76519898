"""
FastAPI server for material ingestion and RAG queries.

Provides endpoints for uploading materials, checking their processing
status, inspecting the queue and asking questions.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import rag_settings, worker_settings
from .container import Container
from .errors import LearnHubError, error_to_http
from .logging_config import logger
from .models import MaterialStatus
from .storage import BlobFile


class QuestionRequest(BaseModel):
    """Request body for /ask endpoint."""

    question: str = Field(min_length=1)
    scope_id: Optional[str] = None
    max_results: Optional[int] = Field(default=None, ge=1, le=20)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SourceResponse(BaseModel):
    chunk_id: str
    material_id: str
    material_title: str
    chunk_index: int
    similarity: float
    preview: str


class AnswerResponse(BaseModel):
    """Response body for /ask endpoint."""

    answer: str
    sources: list[SourceResponse]
    confidence: float
    is_out_of_scope: bool
    follow_up_suggestions: list[str]


class PollIntervalRequest(BaseModel):
    seconds: float


def get_container(request: Request) -> Container:
    return request.app.state.container


def create_app(container: Container | None = None, start_worker: bool | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        container: Pre-built services. When omitted, they are built and
                   started in the lifespan handler.
        start_worker: Run the queue worker inside the API process.
                      Defaults to WORKER_AUTOSTART.
    """
    autostart = worker_settings.autostart if start_worker is None else start_worker

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logger.info("🚀 Starting LearnHub API...")

        if getattr(app.state, "container", None) is None:
            app.state.container = Container.build()
        services: Container = app.state.container

        await services.startup()
        if autostart:
            services.worker.start()

        yield

        logger.info("Shutting down LearnHub API...")
        await services.shutdown()

    app = FastAPI(
        title="LearnHub Materials API",
        description="Upload course materials and ask questions about them.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.container = container

    origins = rag_settings.api_cors_origins.split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LearnHubError)
    async def handle_app_error(request: Request, exc: LearnHubError):
        http_error = error_to_http(exc)
        if http_error.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=http_error.status_code, content=http_error.detail)

    @app.get("/health")
    async def health_check(services: Container = Depends(get_container)):
        """Health check endpoint."""
        return {"status": "healthy", "worker_running": services.worker.is_running}

    @app.post("/ask", response_model=AnswerResponse)
    async def ask_question(request: QuestionRequest, services: Container = Depends(get_container)):
        """
        Ask a question about the course materials.

        The system will:
        1. Embed the question
        2. Score it against chunks of completed materials
        3. Answer from the best matches, or report the question as out of scope
        """
        result = await services.engine.query(
            request.question,
            scope_id=request.scope_id,
            max_results=request.max_results,
            threshold=request.threshold,
        )
        return result.to_dict()

    @app.post("/materials", status_code=status.HTTP_201_CREATED)
    async def upload_material(
        file: UploadFile = File(...),
        title: str = Form(...),
        course_id: str = Form(...),
        upload_preset: Optional[str] = Form(None),
        services: Container = Depends(get_container),
    ):
        """Store a document, create its material and queue it for processing."""
        blob = BlobFile(
            filename=file.filename or "",
            content_type=file.content_type or "application/octet-stream",
            data=await file.read(),
        )
        outcome = await services.materials.submit(blob, title, course_id, upload_preset)
        if not outcome.ok:
            if isinstance(outcome.error, LearnHubError):
                raise outcome.error
            raise error_to_http(outcome.error)

        return {"material": outcome.record, "queued": outcome.details.get("queued", False)}

    @app.get("/materials")
    async def list_materials(
        course_id: Optional[str] = None,
        status_filter: Optional[MaterialStatus] = Query(None, alias="status"),
        limit: int = Query(100, ge=1, le=500),
        offset: int = Query(0, ge=0),
        services: Container = Depends(get_container),
    ):
        materials = await services.materials.list_materials(course_id, status_filter, limit, offset)
        return {"materials": materials, "count": len(materials)}

    @app.get("/materials/{material_id}")
    async def get_material(material_id: str, services: Container = Depends(get_container)):
        return await services.materials.get(material_id)

    @app.get("/materials/{material_id}/status")
    async def get_material_status(material_id: str, services: Container = Depends(get_container)):
        return await services.materials.status(material_id)

    @app.post("/materials/{material_id}/retry")
    async def retry_material(material_id: str, services: Container = Depends(get_container)):
        """Re-queue a failed material."""
        job_id = await services.materials.retry(material_id)
        return {"message": "Material queued for processing", "job_id": job_id}

    @app.delete("/materials/{material_id}")
    async def delete_material(material_id: str, services: Container = Depends(get_container)):
        return await services.materials.delete(material_id)

    @app.post("/queue/trigger")
    async def trigger_queue(services: Container = Depends(get_container)):
        """Process one queue entry right now."""
        processed = await services.worker.trigger_processing()
        return {"processed": processed, "worker": services.worker.status().to_dict()}

    @app.get("/queue/stats")
    async def get_queue_stats(services: Container = Depends(get_container)):
        return await services.queue.stats()

    @app.get("/worker/status")
    async def get_worker_status(services: Container = Depends(get_container)):
        return services.worker.status().to_dict()

    @app.put("/worker/poll-interval")
    async def set_poll_interval(request: PollIntervalRequest, services: Container = Depends(get_container)):
        try:
            services.worker.set_poll_interval(request.seconds)
        except ValueError as e:
            return JSONResponse(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                content={"error": str(e), "detail": None, "type": "ValidationError"},
            )
        return services.worker.status().to_dict()

    @app.get("/rag/stats")
    async def get_rag_stats(course_id: Optional[str] = None, services: Container = Depends(get_container)):
        """Material and chunk statistics."""
        return await services.engine.stats(course_id)

    @app.get("/rag/suggestions")
    async def get_query_suggestions(course_id: Optional[str] = None, services: Container = Depends(get_container)):
        return {"suggestions": await services.engine.query_suggestions(course_id)}

    return app


app = create_app()


def start_server(port: int | None = None):
    """Start the FastAPI server."""
    import uvicorn

    port = port or rag_settings.api_port
    logger.info(f"Starting server on port {port}...")
    uvicorn.run(
        "learnhub.api:app",
        host="0.0.0.0",
        port=port,
        reload=False,
    )
