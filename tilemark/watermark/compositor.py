"""Glyph compositor.

The watermark string is rasterised once per request into an 8-bit coverage
mask; that mask is then stamped at every tile anchor, shadow first, using
straight-alpha source-over blending directly on the RGBA pixel buffer.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Tuple

import numpy as np
from PIL import Image, ImageDraw

from ..errors import RenderError
from ..models import Color
from .fonts import FontCache
from .layout import GlyphRun, layout_glyph_run

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoverageMask:
    alpha: np.ndarray  # (h, w) uint8
    run: GlyphRun

    @property
    def size(self) -> Tuple[int, int]:
        return self.alpha.shape[1], self.alpha.shape[0]


def render_mask(text: str, font_size_px: float, fonts: FontCache) -> CoverageMask:
    """Rasterise ``text`` at ``font_size_px`` into a coverage mask."""
    if not text:
        raise RenderError("Watermark text is empty")
    face = fonts.face(font_size_px)
    run = layout_glyph_run(text, face)
    canvas = Image.new("L", (run.width, run.height), 0)
    ImageDraw.Draw(canvas).text(run.origin, text, fill=255, font=face)
    alpha = np.asarray(canvas, dtype=np.uint8)
    if not alpha.any():
        raise RenderError(f"Watermark text {text!r} has no visible glyphs")
    return CoverageMask(alpha=alpha, run=run)


def _layer_alpha(mask: CoverageMask, color: Color) -> np.ndarray:
    # Per-pixel opacity in [0, 1]: coverage scaled by the colour's alpha.
    return mask.alpha.astype(np.float32) * (color.a / (255.0 * 255.0))


def blend_mask(buffer: np.ndarray, alpha: np.ndarray, x: int, y: int, rgb: Tuple[int, int, int]) -> None:
    """Source-over blend of a solid colour through ``alpha`` at ``(x, y)``.

    Writes into ``buffer`` (``(H, W, 4)`` uint8) in place; the part of the
    stamp outside the buffer is skipped.
    """
    H, W = buffer.shape[:2]
    h, w = alpha.shape
    x0, y0 = max(0, x), max(0, y)
    x1, y1 = min(W, x + w), min(H, y + h)
    if x1 <= x0 or y1 <= y0:
        return

    a = alpha[y0 - y:y1 - y, x0 - x:x1 - x, np.newaxis]
    roi = buffer[y0:y1, x0:x1]
    fg = np.asarray(rgb, dtype=np.float32)
    bg = roi[..., :3].astype(np.float32)
    roi[..., :3] = np.clip(np.rint(fg * a + bg * (1.0 - a)), 0, 255).astype(np.uint8)
    bg_a = roi[..., 3:4].astype(np.float32) / 255.0
    roi[..., 3:4] = np.clip(np.rint((a + bg_a * (1.0 - a)) * 255.0), 0, 255).astype(np.uint8)


def composite(
    buffer: np.ndarray,
    mask: CoverageMask,
    anchors: Iterable[Tuple[int, int]],
    shadow_offset_px: int,
    watermark_color: Color,
    shadow_color: Color,
) -> int:
    """Stamp ``mask`` at every anchor, shadow below foreground.

    Returns the number of stamps that touched the buffer.
    """
    if mask.alpha.size == 0:
        raise RenderError("Coverage mask is empty")
    if buffer.ndim != 3 or buffer.shape[2] != 4 or buffer.dtype != np.uint8:
        raise RenderError(f"Expected an RGBA uint8 buffer, got {buffer.dtype} {buffer.shape}")

    fg_alpha = _layer_alpha(mask, watermark_color)
    shadow_alpha = _layer_alpha(mask, shadow_color)
    draw_shadow = shadow_color.a > 0
    draw_fg = watermark_color.a > 0
    H, W = buffer.shape[:2]
    h, w = mask.alpha.shape

    stamped = 0
    for x, y in anchors:
        if draw_shadow:
            blend_mask(buffer, shadow_alpha, x + shadow_offset_px, y + shadow_offset_px, shadow_color.rgb())
        if draw_fg:
            blend_mask(buffer, fg_alpha, x, y, watermark_color.rgb())
        if x < W and y < H and x + w + shadow_offset_px > 0 and y + h + shadow_offset_px > 0:
            stamped += 1
    logger.debug("Stamped %d tiles of %dx%d", stamped, w, h)
    return stamped
