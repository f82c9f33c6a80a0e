import logging
from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from review_rag.config import settings
from review_rag.database import Base, engine
from review_rag.deps import AuthContext, get_auth_context, get_pipeline, r
from review_rag.errors import (
    BudgetExceeded,
    DeadlineExceeded,
    FatalError,
    GenerationFailed,
    NotFound,
    RetryableError,
    ReviewError,
    Throttled,
    UnavailableError,
    ValidationError,
)
from review_rag.pipeline import ReviewPipeline
from review_rag.schemas import FeedbackCreate, ReviewCreate
from review_rag.streaming import DELTA, ERROR, RESET

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# first match wins, so subclasses go before their bases
ERROR_STATUS = (
    (ValidationError, 400),
    (NotFound, 404),
    (BudgetExceeded, 402),
    (Throttled, 429),
    (GenerationFailed, 502),
    (FatalError, 502),
    (DeadlineExceeded, 504),
    (RetryableError, 503),
    (UnavailableError, 503),
)

RESET_MARKER = "\n\n--- previous model failed, restarting with the next one ---\n\n"


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield
    await get_pipeline().aclose()
    await r.aclose()


app = FastAPI(title="Review RAG API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def status_for(exc: ReviewError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(ReviewError)
async def review_error_handler(request, exc: ReviewError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.to_payload()})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc):
    logger.exception("Unhandled error")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


@app.post("/review", status_code=202)
async def create_review(
    payload: ReviewCreate,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(get_auth_context),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    request = await pipeline.submit(payload, org_id=auth.org_id)
    background_tasks.add_task(pipeline.process, request.id)
    return {"reviewRequestId": request.id, "status": "pending"}


@app.get("/review/{request_id}")
async def get_review(
    request_id: str,
    auth: AuthContext = Depends(get_auth_context),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    return await pipeline.get_review(request_id)


@app.post("/review/{request_id}/feedback", status_code=204)
async def post_feedback(
    request_id: str,
    feedback: FeedbackCreate,
    auth: AuthContext = Depends(get_auth_context),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    await pipeline.submit_feedback(request_id, feedback)
    return Response(status_code=204)


@app.get("/review/{request_id}/stream")
async def stream_review(
    request_id: str,
    auth: AuthContext = Depends(get_auth_context),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    channel = pipeline.open_stream(request_id)
    if channel is None:
        # already finished, or someone else is streaming it
        body = await pipeline.get_review(request_id)
        if body.get("content") is not None:
            return PlainTextResponse(body["content"])
        return JSONResponse(status_code=409, content={"status": body.get("status")})

    async def relay():
        async for event in channel.events():
            if event.kind == DELTA:
                yield event.text
            elif event.kind == RESET:
                yield RESET_MARKER
            elif event.kind == ERROR:
                yield f"\n[error] {event.text}\n"

    return StreamingResponse(relay(), media_type="text/plain")


@app.get("/projects/{project_id}/analytics")
async def get_analytics(
    project_id: str,
    auth: AuthContext = Depends(get_auth_context),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    return await pipeline.analytics(project_id)
