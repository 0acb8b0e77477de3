"""Watermark layout engine.

Computes, for one image, the resolved font size, the tile period and the
lattice of anchors at which the rendered watermark is stamped. All lengths
are derived from the image height so the pattern looks the same at any
resolution; only ``font_height_min`` is an absolute pixel floor.
"""

import math
from dataclasses import dataclass
from typing import List, Tuple

from PIL import ImageFont

from ..errors import RenderError
from .fonts import glyph_advances


@dataclass(frozen=True)
class Layout:
    font_size: float
    run_width: float
    spacing_x: float
    spacing_y: float
    origin: Tuple[float, float]
    shadow_offset: int


@dataclass(frozen=True)
class GlyphRun:
    """Horizontal layout of one rendering of the watermark string.

    ``glyphs`` holds ``(char, pen_x, pen_y)`` relative to the top-left of the
    run's bounding box; ``origin`` is where the text anchor sits in that box.
    """

    glyphs: Tuple[Tuple[str, float, float], ...]
    width: int
    height: int
    origin: Tuple[int, int]


@dataclass(frozen=True)
class TileGrid:
    anchors: Tuple[Tuple[int, int], ...]
    cell: Tuple[int, int]
    image_size: Tuple[int, int]

    def __len__(self) -> int:
        return len(self.anchors)

    def covers(self, x: int, y: int) -> bool:
        cw, ch = self.cell
        return any(ax <= x < ax + cw and ay <= y < ay + ch for ax, ay in self.anchors)


def resolve_font_size(image_height: int, config) -> float:
    return max(config.font_height_min, image_height * config.font_height_ratio)


def compute_layout(image_width: int, image_height: int, text: str, config) -> Layout:
    if image_width <= 0 or image_height <= 0:
        raise RenderError(f"Invalid image size {image_width}x{image_height}")

    font_size = resolve_font_size(image_height, config)
    # Monospaced approximation so the tiling is uniform whatever the font.
    run_width = font_size * config.font_width_ratio * len(text)
    spacing_x = run_width * config.char_spacing_x_ratio
    spacing_y = font_size * config.char_spacing_y_ratio
    if not (spacing_x > 0 and spacing_y > 0):
        raise RenderError(
            f"Non-positive tile spacing ({spacing_x:.2f}, {spacing_y:.2f}) for text {text!r}"
        )

    origin = (
        spacing_x * config.global_offset_x_ratio,
        spacing_y * config.global_offset_y_ratio,
    )
    return Layout(
        font_size=font_size,
        run_width=run_width,
        spacing_x=spacing_x,
        spacing_y=spacing_y,
        origin=origin,
        shadow_offset=int(round(font_size * config.shadow_offset_ratio)),
    )


def _axis(origin: float, spacing: float, extent: float, limit: int) -> List[int]:
    # First point in [-spacing, 0), then back off while earlier tiles still reach the image.
    start = origin % spacing - spacing
    while start - spacing + extent > 0:
        start -= spacing
    points = []
    k = 0
    while True:
        p = start + k * spacing
        if p >= limit:
            break
        points.append(int(math.floor(p)))
        k += 1
    return points


def tile_grid(image_width: int, image_height: int, layout: Layout, tile_size: Tuple[int, int] = (0, 0)) -> TileGrid:
    """Anchor lattice covering the whole image.

    ``tile_size`` is the stamped mask size (shadow included); rows and columns
    whose stamp would still reach into the image are kept so the borders are
    never left untouched. Anchors outside the image are clipped later.
    """
    if image_width <= 0 or image_height <= 0:
        raise RenderError(f"Invalid image size {image_width}x{image_height}")
    tw, th = tile_size
    xs = _axis(layout.origin[0], layout.spacing_x, max(tw, layout.spacing_x), image_width)
    ys = _axis(layout.origin[1], layout.spacing_y, max(th, layout.spacing_y), image_height)
    return TileGrid(
        anchors=tuple((x, y) for y in ys for x in xs),
        cell=(int(math.ceil(layout.spacing_x)), int(math.ceil(layout.spacing_y))),
        image_size=(image_width, image_height),
    )


def layout_glyph_run(text: str, face: ImageFont.FreeTypeFont) -> GlyphRun:
    """Pen positions and bounding box of ``text`` set in ``face``."""
    left, top, right, bottom = face.getbbox(text)
    left, top = math.floor(left), math.floor(top)
    width, height = math.ceil(right) - left, math.ceil(bottom) - top
    if width <= 0 or height <= 0:
        raise RenderError(f"Watermark text {text!r} renders to an empty mask")
    origin = (-left, -top)
    glyphs = []
    pen = float(origin[0])
    for ch, advance in zip(text, glyph_advances(face, text)):
        glyphs.append((ch, pen, float(origin[1])))
        pen += advance
    return GlyphRun(glyphs=tuple(glyphs), width=width, height=height, origin=origin)