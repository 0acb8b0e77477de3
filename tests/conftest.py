from typing import Callable

import numpy as np
import pytest

from tilemark.config import Config
from tilemark.watermark.fonts import FontCache


@pytest.fixture
def config() -> Config:
    return Config(delivery_endpoint="http://minio.local:9000")


@pytest.fixture(scope="session")
def fonts() -> FontCache:
    return FontCache.from_path(Config().font_path)


@pytest.fixture
def gray_buffer() -> Callable[[int, int], np.ndarray]:
    def make(width: int, height: int, value: int = 128) -> np.ndarray:
        buf = np.full((height, width, 4), value, dtype=np.uint8)
        buf[..., 3] = 255
        return buf
    return make
