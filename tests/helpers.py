"""Shared test data builders and the recording MockTransport handler."""

import io
import json
import time
from typing import Iterator, List

import httpx
from PIL import Image

SOURCE_URL = "http://storage.local/photos/cat.jpg?X-Amz-Signature=abc"


def image_bytes(width: int, height: int, color=(120, 130, 140), fmt: str = "PNG") -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format=fmt)
    return out.getvalue()


def payload(user_url: str = "http://storage.local/photos/cat.jpg", source_url: str = SOURCE_URL) -> dict:
    return {
        "getObjectContext": {
            "inputS3Url": source_url,
            "outputRoute": "io-route-1",
            "outputToken": "tok-1",
        },
        "userRequest": {"url": user_url, "headers": {"Accept": ["*/*"]}},
        "protocolVersion": "1.00",
        "userIdentity": {"accessKeyId": "minio", "principalId": "minio", "type": "root"},
    }


def as_body(obj) -> bytes:
    return json.dumps(obj).encode("utf-8")


class Recorder:
    """httpx MockTransport handler that records every request."""

    def __init__(self, source: bytes = b"", fetch_status: int = 200, deliver_status: int = 200):
        self.source = source
        self.fetch_status = fetch_status
        self.deliver_status = deliver_status
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return httpx.Response(self.fetch_status, content=self.source)
        return httpx.Response(self.deliver_status)

    @property
    def gets(self):
        return [r for r in self.requests if r.method == "GET"]

    @property
    def posts(self):
        return [r for r in self.requests if r.method == "POST"]


class TrickleStream(httpx.SyncByteStream):
    """Response body that arrives one small chunk at a time."""

    def __init__(self, chunks: int = 5, delay: float = 0.1, chunk: bytes = b"x"):
        self.chunks = chunks
        self.delay = delay
        self.chunk = chunk

    def __iter__(self) -> Iterator[bytes]:
        for _ in range(self.chunks):
            time.sleep(self.delay)
            yield self.chunk
