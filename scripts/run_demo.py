"""Watermark a generated image offline and run it through the HTTP app.

Writes ``data/watermarked_demo.jpg``; no network access is needed because
the presigned URL and output route are served by an ``httpx.MockTransport``.
"""

import io
import json
import sys
from pathlib import Path

import httpx
import numpy as np
from fastapi.testclient import TestClient
from PIL import Image

from tilemark.config import Config
from tilemark.main import create_app

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_DEFAULT_DEMO_OUTPUT = _PROJECT_ROOT / "data" / "watermarked_demo.jpg"


def make_source(width: int = 1280, height: int = 720) -> bytes:
    xs = np.linspace(0, 255, width, dtype=np.float32)
    ys = np.linspace(0, 255, height, dtype=np.float32)
    rgb = np.stack(
        np.broadcast_arrays(xs[None, :], ys[:, None], (xs[None, :] + ys[:, None]) / 2), axis=-1
    ).astype(np.uint8)
    out = io.BytesIO()
    Image.fromarray(rgb).save(out, format="PNG")
    return out.getvalue()


def main(text: str = "example"):
    source = make_source()
    delivered = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, content=source)
        delivered["route"] = request.headers.get("x-amz-request-route")
        delivered["bytes"] = len(request.content)
        return httpx.Response(200)

    app = create_app(Config(), transport=httpx.MockTransport(handler))
    payload = {
        "getObjectContext": {
            "inputS3Url": "http://storage.local/bucket/demo.png?X-Amz-Signature=demo",
            "outputRoute": "io-demo",
            "outputToken": "token-demo",
        },
        "userRequest": {"url": f"http://storage.local/bucket/demo.png?usercode={text}"},
    }
    with TestClient(app) as client:
        resp = client.post("/", json=payload)
    print("POST / status:", resp.status_code)
    if resp.status_code != 200:
        print(json.dumps(resp.json(), indent=2))
        return 1
    _DEFAULT_DEMO_OUTPUT.parent.mkdir(parents=True, exist_ok=True)
    _DEFAULT_DEMO_OUTPUT.write_bytes(resp.content)
    print("delivered:", json.dumps(delivered))
    print("wrote:", _DEFAULT_DEMO_OUTPUT)
    return 0


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:2]))
