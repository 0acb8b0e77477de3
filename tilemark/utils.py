import logging
import os
from typing import Callable, Mapping, Optional, TypeVar
from urllib.parse import parse_qs, urlsplit

logger = logging.getLogger(__name__)

T = TypeVar("T")


# --- Environment helpers ---
def read_env(environ: Mapping[str, str], *names: str) -> Optional[str]:
    """Return the first non-empty value among ``names`` (aliases), else None."""
    for name in names:
        val = environ.get(name)
        if val is not None and val.strip() != "":
            return val.strip()
    return None


def env_value(environ: Mapping[str, str], name: str, default: T, parse: Callable[[str], T]) -> T:
    """Parse env var ``name`` with ``parse``; warn and fall back on bad input."""
    raw = read_env(environ, name)
    if raw is None:
        return default
    try:
        return parse(raw)
    except ValueError:
        logger.warning("Invalid value for %s (%r), using default: %r", name, raw, default)
        return default


def env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    return env_value(environ, name, default, int)


def env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    return env_value(environ, name, default, float)


def resolve_workers(workers: int) -> int:
    """0 means one worker per available processor."""
    if workers > 0:
        return workers
    return os.cpu_count() or 1


# --- Query string helpers ---
def query_param(url: str, name: str) -> Optional[str]:
    """Return the first URL-decoded value of ``name`` in the query of ``url``.

    Empty values are treated as absent; other parameters are ignored.
    Raises ValueError when ``url`` cannot be split.
    """
    query = urlsplit(url).query
    values = parse_qs(query, keep_blank_values=False).get(name)
    if not values:
        return None
    return values[0]


def is_header_safe(value: str) -> bool:
    """True when ``value`` can be sent verbatim as an HTTP header value."""
    return value.isascii() and value.isprintable()
