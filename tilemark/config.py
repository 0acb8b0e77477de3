"""Process-wide configuration.

Built once at startup from the environment and never mutated afterwards.
Ratios are relative to the image being processed; only ``font_height_min``
is in pixels.
"""

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import Color
from .utils import env_float, env_int, read_env

DEFAULT_FONT_PATH = Path(__file__).resolve().parent / "assets" / "DejaVuSans.ttf"


class Config(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=3333, ge=1, le=65535)
    workers: int = Field(default=0, ge=0)
    log_level: str = "info"

    # Font
    font_path: str = str(DEFAULT_FONT_PATH)
    font_height_ratio: float = Field(default=0.10, gt=0)
    font_height_min: float = Field(default=40.0, gt=0)
    font_width_ratio: float = Field(default=0.6, gt=0)

    # Colours
    watermark_color: Color = Color(r=255, g=255, b=255, a=46)
    shadow_color: Color = Color(r=0, g=0, b=0, a=46)

    # Layout
    shadow_offset_ratio: float = Field(default=0.065, ge=0)
    char_spacing_x_ratio: float = 1.1
    char_spacing_y_ratio: float = 0.4
    global_offset_x_ratio: float = -0.5
    global_offset_y_ratio: float = -1.2

    # HTTP
    http_pool_max_idle: int = Field(default=10, ge=0)
    http_connect_timeout: float = Field(default=10.0, gt=0)
    http_request_timeout: float = Field(default=60.0, gt=0)
    delivery_endpoint: str = "http://localhost:9000"

    # Output
    jpeg_quality: int = Field(default=90, ge=1, le=100)
    default_watermark_text: str = "WATERMARK"
    max_watermark_length: int = Field(default=256, ge=1)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Read configuration from ``environ`` (default: ``os.environ``).

        Unparseable numbers fall back to their defaults with a warning;
        parsed values that violate a constraint raise ``ValidationError``.
        """
        env = os.environ if environ is None else environ
        d = cls.model_fields

        def num(name: str, field: str):
            default = d[field].default
            if isinstance(default, int):
                return env_int(env, name, default)
            return env_float(env, name, default)

        def color(prefix: str, default: Color) -> Color:
            return Color(
                r=env_int(env, f"{prefix}_R", default.r),
                g=env_int(env, f"{prefix}_G", default.g),
                b=env_int(env, f"{prefix}_B", default.b),
                a=env_int(env, f"{prefix}_A", default.a),
            )

        return cls(
            host=read_env(env, "HOST") or d["host"].default,
            port=num("PORT", "port"),
            workers=num("WORKERS", "workers"),
            log_level=(read_env(env, "LOG_LEVEL") or d["log_level"].default).lower(),
            font_path=read_env(env, "FONT_PATH") or d["font_path"].default,
            font_height_ratio=num("FONT_HEIGHT_RATIO", "font_height_ratio"),
            font_height_min=num("FONT_HEIGHT_MIN", "font_height_min"),
            font_width_ratio=num("FONT_WIDTH_RATIO", "font_width_ratio"),
            watermark_color=color("WATERMARK_COLOR", d["watermark_color"].default),
            shadow_color=color("SHADOW_COLOR", d["shadow_color"].default),
            shadow_offset_ratio=num("SHADOW_OFFSET_RATIO", "shadow_offset_ratio"),
            char_spacing_x_ratio=num("CHAR_SPACING_X_RATIO", "char_spacing_x_ratio"),
            char_spacing_y_ratio=num("CHAR_SPACING_Y_RATIO", "char_spacing_y_ratio"),
            global_offset_x_ratio=num("GLOBAL_OFFSET_X_RATIO", "global_offset_x_ratio"),
            global_offset_y_ratio=num("GLOBAL_OFFSET_Y_RATIO", "global_offset_y_ratio"),
            http_pool_max_idle=num("HTTP_POOL_MAX_IDLE", "http_pool_max_idle"),
            http_connect_timeout=num("HTTP_CONNECT_TIMEOUT", "http_connect_timeout"),
            http_request_timeout=num("HTTP_REQUEST_TIMEOUT", "http_request_timeout"),
            delivery_endpoint=(
                read_env(env, "DELIVERY_ENDPOINT", "MINIO_ENDPOINT") or d["delivery_endpoint"].default
            ),
            jpeg_quality=num("JPEG_QUALITY", "jpeg_quality"),
            default_watermark_text=(
                read_env(env, "DEFAULT_WATERMARK_TEXT") or d["default_watermark_text"].default
            ),
            max_watermark_length=num("MAX_WATERMARK_LENGTH", "max_watermark_length"),
        )
