"""Font metrics cache.

The outline font is read from disk once at startup and kept as immutable
bytes. Each request asks for a face at its resolved pixel size; faces are
cheap to build from the cached bytes and are never shared between threads.
"""

import io
import logging
from pathlib import Path
from typing import List, Union

from PIL import ImageFont

from ..errors import FontLoadError

logger = logging.getLogger(__name__)

_CHECK_SIZE = 32


class FontCache:
    def __init__(self, data: bytes, source: str = "<memory>"):
        if not data:
            raise FontLoadError(f"Font data is empty: {source}")
        self._data = bytes(data)
        self.source = source
        # Fail fast on malformed data rather than on the first request.
        try:
            sample = self.face(_CHECK_SIZE)
            sample.getbbox("M")
        except (OSError, ValueError) as e:
            raise FontLoadError(f"Failed to load font {source}: {e}") from e
        logger.info("Loaded font %s (%d bytes)", source, len(self._data))

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "FontCache":
        p = Path(path)
        try:
            data = p.read_bytes()
        except OSError as e:
            raise FontLoadError(f"Failed to read font {p}: {e}") from e
        return cls(data, source=str(p))

    def face(self, size_px: float) -> ImageFont.FreeTypeFont:
        """Return a new FreeType face at ``size_px`` (rounded, at least 1px)."""
        return ImageFont.truetype(io.BytesIO(self._data), size=max(1, int(round(size_px))))


def glyph_advances(face: ImageFont.FreeTypeFont, text: str) -> List[float]:
    """Per-character horizontal advances in pixels (no kerning), one pass."""
    return [face.getlength(ch) for ch in text]
