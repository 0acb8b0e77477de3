"""Transform pipeline.

One ``TransformPipeline`` instance handles exactly one webhook request:

    Received -> Fetching -> Decoded -> Rendering -> Encoding -> Delivered

with ``Failed`` reachable from every stage. Each stage runs once; retries
belong to the storage system that called us.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import httpx
import numpy as np
from pydantic import ValidationError

from .codec import decode_image, encode_jpeg
from .config import Config
from .errors import BadRequest, DeliveryError, RenderError, TransformError
from .models import TransformRequest, WebhookPayload
from .transport import DeliveryClient, ImageFetcher
from .utils import is_header_safe, query_param
from .watermark.compositor import composite, render_mask
from .watermark.fonts import FontCache
from .watermark.layout import Layout, compute_layout, tile_grid

logger = logging.getLogger(__name__)

WATERMARK_PARAM = "usercode"
SOURCE_SCHEMES = ("http", "https")


class Stage(str, Enum):
    RECEIVED = "Received"
    FETCHING = "Fetching"
    DECODED = "Decoded"
    RENDERING = "Rendering"
    ENCODING = "Encoding"
    DELIVERED = "Delivered"
    FAILED = "Failed"


@dataclass(frozen=True)
class ServiceContext:
    """Everything a pipeline borrows from the process; read-only."""

    config: Config
    fonts: FontCache
    fetcher: ImageFetcher
    delivery: DeliveryClient


@dataclass
class TransformOutcome:
    state: Stage
    request: Optional[TransformRequest] = None
    image: Optional[bytes] = None
    delivery_status: Optional[int] = None
    failed_at: Optional[Stage] = None
    error: Optional[TransformError] = None

    @property
    def ok(self) -> bool:
        return self.state is Stage.DELIVERED


def parse_request(body: bytes, default_text: str, max_text_length: int = 256) -> TransformRequest:
    """Build a TransformRequest from the raw webhook body.

    Everything that would otherwise fail inside the HTTP client (an
    unparseable source URL, a route or token that cannot travel in a header)
    is rejected here, before any network call.
    """
    try:
        payload = WebhookPayload.model_validate_json(body)
    except ValidationError as e:
        raise BadRequest(f"Malformed payload: {e.error_count()} validation error(s)") from e
    try:
        text = query_param(payload.userRequest.url, WATERMARK_PARAM)
    except ValueError as e:
        raise BadRequest(f"Malformed userRequest.url: {e}") from e
    if text is not None and len(text) > max_text_length:
        raise BadRequest(f"{WATERMARK_PARAM} is longer than {max_text_length} characters")

    ctx = payload.getObjectContext
    try:
        source = httpx.URL(ctx.inputS3Url)
    except httpx.InvalidURL as e:
        raise BadRequest(f"Malformed inputS3Url: {e}") from e
    if source.scheme not in SOURCE_SCHEMES or not source.host:
        raise BadRequest("inputS3Url must be an absolute http(s) URL")
    for name in ("outputRoute", "outputToken"):
        if not is_header_safe(getattr(ctx, name)):
            raise BadRequest(f"{name} must be printable ASCII")
    return TransformRequest(
        source_url=ctx.inputS3Url,
        output_route=ctx.outputRoute,
        output_token=ctx.outputToken,
        watermark_text=text or default_text,
    )


def apply_watermark(buffer: np.ndarray, text: str, config: Config, fonts: FontCache) -> Layout:
    """Render the tiled watermark into ``buffer`` in place."""
    height, width = buffer.shape[:2]
    layout = compute_layout(width, height, text, config)
    try:
        mask = render_mask(text, layout.font_size, fonts)
    except (OSError, ValueError) as e:
        raise RenderError(f"Font unavailable for size {layout.font_size:.1f}: {e}") from e
    mask_w, mask_h = mask.size
    grid = tile_grid(
        width, height, layout,
        (mask_w + layout.shadow_offset, mask_h + layout.shadow_offset),
    )
    logger.debug(
        "Layout %dx%d: font=%.1fpx spacing=(%.1f, %.1f) tiles=%d mask=%dx%d",
        width, height, layout.font_size, layout.spacing_x, layout.spacing_y,
        len(grid), mask_w, mask_h,
    )
    composite(
        buffer, mask, grid.anchors, layout.shadow_offset,
        config.watermark_color, config.shadow_color,
    )
    return layout


class TransformPipeline:
    def __init__(self, context: ServiceContext):
        self.context = context
        self.state = Stage.RECEIVED
        self.history: List[Stage] = [Stage.RECEIVED]

    def _enter(self, stage: Stage) -> None:
        self.state = stage
        self.history.append(stage)

    def run(self, body: bytes) -> TransformOutcome:
        """Drive one request to ``Delivered`` or ``Failed``; never raises TransformError."""
        started = time.monotonic()
        request: Optional[TransformRequest] = None
        try:
            cfg = self.context.config
            request = parse_request(body, cfg.default_watermark_text, cfg.max_watermark_length)
            logger.info("Received watermarking request: %s", request.source_url)
            image, status = self._process(request)
        except TransformError as e:
            return self._fail(e, request)
        logger.info(
            "Delivered watermarked image (%d bytes) in %.0f ms",
            len(image), (time.monotonic() - started) * 1000,
        )
        return TransformOutcome(
            state=self.state, request=request, image=image, delivery_status=status,
        )

    def _process(self, request: TransformRequest):
        cfg = self.context.config

        self._enter(Stage.FETCHING)
        raw = self.context.fetcher.fetch(request.source_url)
        buffer = decode_image(raw)
        self._enter(Stage.DECODED)

        self._enter(Stage.RENDERING)
        apply_watermark(buffer, request.watermark_text, cfg, self.context.fonts)

        self._enter(Stage.ENCODING)
        image = encode_jpeg(buffer, cfg.jpeg_quality)
        del buffer

        self._enter(Stage.DELIVERED)
        status = self.context.delivery.deliver(request.output_route, request.output_token, image)
        return image, status

    def _fail(self, error: TransformError, request: Optional[TransformRequest]) -> TransformOutcome:
        failed_at = self.state
        self._enter(Stage.FAILED)
        logger.error("Request failed at %s with %s: %s", failed_at.value, error.kind, error.message)
        # The output channel is unusable for DeliveryError and unknown for BadRequest.
        if request is not None and not isinstance(error, (BadRequest, DeliveryError)):
            self.context.delivery.report_error(
                request.output_route, request.output_token,
                error.status_code, error.kind, error.message,
            )
        return TransformOutcome(
            state=Stage.FAILED, request=request, failed_at=failed_at, error=error,
        )
