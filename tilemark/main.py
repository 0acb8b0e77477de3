import logging
from contextlib import asynccontextmanager
from typing import Optional

import anyio.to_thread
import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from .config import Config
from .models import ErrorResponse, HealthResponse
from .pipeline import ServiceContext, TransformPipeline
from .transport import DeliveryClient, ImageFetcher, create_http_client
from .utils import resolve_workers
from .watermark.fonts import FontCache

logger = logging.getLogger(__name__)

router = APIRouter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: Config = app.state.config
    # Font failure is fatal: no request may run without it.
    fonts = FontCache.from_path(config.font_path)
    workers = resolve_workers(config.workers)
    anyio.to_thread.current_default_thread_limiter().total_tokens = workers
    client = create_http_client(config, app.state.http_transport)
    app.state.context = ServiceContext(
        config=config,
        fonts=fonts,
        fetcher=ImageFetcher(client),
        delivery=DeliveryClient(client, config.delivery_endpoint),
    )
    app.state.workers = workers
    logger.info("Ready with %d workers, delivering to %s", workers, config.delivery_endpoint)
    try:
        yield
    finally:
        app.state.context = None
        client.close()


@router.get("/health/", response_model=HealthResponse)
def health(request: Request):
    context = getattr(request.app.state, "context", None)
    if context is None:
        return JSONResponse(status_code=503, content={"status": "starting"})
    return HealthResponse(status="ok", workers=request.app.state.workers, font=context.fonts.source)


@router.post("/")
@router.post("/generate/")
async def generate(request: Request):
    body = await request.body()
    pipeline = TransformPipeline(request.app.state.context)
    # Runs on the bounded worker pool; the pipeline blocks on network I/O.
    outcome = await run_in_threadpool(pipeline.run, body)
    if outcome.ok:
        return Response(content=outcome.image, media_type="image/jpeg")
    err = outcome.error
    return JSONResponse(
        status_code=err.status_code,
        content=ErrorResponse(kind=err.kind, stage=outcome.failed_at.value, message=err.message).model_dump(),
    )


def create_app(config: Optional[Config] = None, transport: Optional[httpx.BaseTransport] = None) -> FastAPI:
    app = FastAPI(title="tilemark object-lambda watermark", lifespan=lifespan)
    app.state.config = config or Config.from_env()
    app.state.http_transport = transport
    app.state.context = None
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    config: Config = app.state.config
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level)


if __name__ == "__main__":
    run()
