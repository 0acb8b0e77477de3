import httpx
import numpy as np
import pytest
from fastapi.testclient import TestClient

from tilemark.codec import decode_image, encode_jpeg
from tilemark.config import Config
from tilemark.errors import BadRequest, DeliveryError, EncodeError, FetchError
from tilemark.main import create_app
from tilemark.pipeline import ServiceContext, Stage, TransformPipeline, parse_request
from tilemark.transport import DeliveryClient, ImageFetcher, create_http_client

from helpers import SOURCE_URL, Recorder, TrickleStream, as_body, image_bytes, payload


def make_client(config, recorder):
    app = create_app(config, transport=httpx.MockTransport(recorder))
    return TestClient(app)


def make_pipeline(config, fonts, recorder):
    http = create_http_client(config, httpx.MockTransport(recorder))
    context = ServiceContext(
        config=config,
        fonts=fonts,
        fetcher=ImageFetcher(http),
        delivery=DeliveryClient(http, config.delivery_endpoint),
    )
    return TransformPipeline(context)


def test_health_after_startup(config):
    with make_client(config, Recorder()) as client:
        r = client.get("/health/")
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["status"] == "ok"
    assert data["workers"] >= 1
    assert data["font"].endswith("DejaVuSans.ttf")


def test_watermark_request_end_to_end(config):
    recorder = Recorder(source=image_bytes(320, 180))
    with make_client(config, recorder) as client:
        r = client.post("/", json=payload("http://storage.local/photos/cat.jpg?usercode=alice%20b"))
    assert r.status_code == 200, r.text
    assert r.headers["content-type"] == "image/jpeg"

    assert [str(g.url) for g in recorder.gets] == [SOURCE_URL]
    (post,) = recorder.posts
    assert str(post.url) == "http://minio.local:9000/io-route-1"
    assert post.headers["x-amz-request-route"] == "io-route-1"
    assert post.headers["x-amz-request-token"] == "tok-1"
    assert post.headers["content-type"] == "image/jpeg"
    assert post.content == r.content

    out = decode_image(r.content)
    assert out.shape == (180, 320, 4)
    source = decode_image(image_bytes(320, 180))
    assert np.abs(out[..., :3].astype(int) - source[..., :3].astype(int)).max() > 10


def test_original_generate_route(config):
    recorder = Recorder(source=image_bytes(64, 64))
    with make_client(config, recorder) as client:
        r = client.post("/generate/", json=payload())
    assert r.status_code == 200


def test_malformed_json_is_bad_request_without_network(config):
    recorder = Recorder(source=image_bytes(10, 10))
    with make_client(config, recorder) as client:
        r = client.post("/", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    body = r.json()
    assert body["kind"] == "BadRequest"
    assert body["stage"] == "Received"
    assert recorder.requests == []


def test_missing_object_context_is_bad_request(config):
    recorder = Recorder()
    body = payload()
    del body["getObjectContext"]["outputToken"]
    with make_client(config, recorder) as client:
        r = client.post("/", json=body)
    assert r.status_code == 400
    assert recorder.requests == []


def test_forbidden_source_is_fetch_error(config, fonts):
    recorder = Recorder(fetch_status=403)
    pipeline = make_pipeline(config, fonts, recorder)
    outcome = pipeline.run(as_body(payload()))

    assert outcome.state is Stage.FAILED
    assert outcome.failed_at is Stage.FETCHING
    assert outcome.error.kind == "FetchError"
    assert Stage.RENDERING not in pipeline.history
    assert Stage.ENCODING not in pipeline.history
    # one GET, then only the error report on the output channel
    assert len(recorder.gets) == 1
    (report,) = recorder.posts
    assert report.content == b""
    assert report.headers["x-amz-fwd-error-code"] == "FetchError"
    assert report.headers["x-amz-fwd-status"] == "502"


def test_forbidden_source_http_status(config):
    with make_client(config, Recorder(fetch_status=403)) as client:
        r = client.post("/", json=payload())
    assert r.status_code == 502
    assert r.json()["kind"] == "FetchError"


def test_undecodable_source_is_fetch_error(config, fonts):
    recorder = Recorder(source=b"definitely not an image")
    outcome = make_pipeline(config, fonts, recorder).run(
        as_body(payload())
    )
    assert outcome.error.kind == "FetchError"


def test_transport_failure_is_fetch_error(config, fonts):
    def handler(request):
        if request.method == "GET":
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200)

    http = create_http_client(config, httpx.MockTransport(handler))
    context = ServiceContext(config, fonts, ImageFetcher(http), DeliveryClient(http, config.delivery_endpoint))
    outcome = TransformPipeline(context).run(as_body(payload()))
    assert outcome.error.kind == "FetchError"


def test_delivery_failure_is_reported_to_caller_only(config, fonts):
    recorder = Recorder(source=image_bytes(40, 40), deliver_status=500)
    pipeline = make_pipeline(config, fonts, recorder)
    outcome = pipeline.run(as_body(payload()))
    assert outcome.error.kind == "DeliveryError"
    assert outcome.failed_at is Stage.DELIVERED
    # no second attempt and no error forwarding on the failed channel
    assert len(recorder.posts) == 1
    assert "x-amz-fwd-error-code" not in recorder.posts[0].headers


def test_whitespace_text_is_render_error(config):
    recorder = Recorder(source=image_bytes(40, 40))
    with make_client(config, recorder) as client:
        r = client.post("/", json=payload("http://s/cat.jpg?usercode=%20%20"))
    assert r.status_code == 422
    assert r.json()["kind"] == "RenderError"
    assert r.json()["stage"] == "Rendering"


def test_successful_history(config, fonts):
    pipeline = make_pipeline(config, fonts, Recorder(source=image_bytes(30, 20)))
    outcome = pipeline.run(as_body(payload()))
    assert outcome.ok
    assert pipeline.history == [
        Stage.RECEIVED, Stage.FETCHING, Stage.DECODED,
        Stage.RENDERING, Stage.ENCODING, Stage.DELIVERED,
    ]
    assert outcome.delivery_status == 200


@pytest.mark.parametrize(
    "url,expected",
    [
        ("http://s/cat.jpg", "WATERMARK"),
        ("http://s/cat.jpg?usercode=", "WATERMARK"),
        ("http://s/cat.jpg?size=big", "WATERMARK"),
        ("http://s/cat.jpg?usercode=u-123&size=big", "u-123"),
        ("http://s/cat.jpg?usercode=J%C3%BCrgen+S", "Jürgen S"),
        ("http://s/cat.jpg?usercode=first&usercode=second", "first"),
    ],
)
def test_watermark_text_from_query(url, expected):
    body = as_body(payload(url))
    req = parse_request(body, "WATERMARK")
    assert req.watermark_text == expected
    assert req.source_url == SOURCE_URL
    assert req.output_route == "io-route-1"


def test_default_text_used_verbatim():
    body = as_body(payload())
    assert parse_request(body, "  © ACME  ").watermark_text == "  © ACME  "


def test_unknown_payload_keys_are_ignored():
    body = payload()
    body["extra"] = {"anything": 1}
    body["userRequest"]["headers"]["X-Custom"] = ["1"]
    req = parse_request(as_body(body), "WATERMARK")
    assert req.output_token == "tok-1"


@pytest.mark.parametrize("raw", [b"", b"[]", b'{"getObjectContext": {}}', b"\xff\xfe"])
def test_parse_request_rejects_malformed(raw):
    with pytest.raises(BadRequest):
        parse_request(raw, "WATERMARK")


def test_font_failure_aborts_startup(tmp_path):
    broken = tmp_path / "broken.ttf"
    broken.write_bytes(b"not a font")
    app = create_app(Config(font_path=str(broken)), transport=httpx.MockTransport(Recorder()))
    with pytest.raises(Exception):
        with TestClient(app):
            pass


@pytest.mark.parametrize("field,value", [
    ("outputToken", "tök"),
    ("outputRoute", "route-ü"),
    ("outputToken", "tok\r\nX-Injected: 1"),
])
def test_unsendable_output_header_is_bad_request_without_network(config, field, value):
    recorder = Recorder(source=image_bytes(20, 20))
    body = payload()
    body["getObjectContext"][field] = value
    with make_client(config, recorder) as client:
        r = client.post("/", json=body)
    assert r.status_code == 400
    assert r.json()["kind"] == "BadRequest"
    assert recorder.requests == []


@pytest.mark.parametrize("source", ["http://[::1", "ftp://storage.local/cat.jpg", "/photos/cat.jpg"])
def test_unusable_source_url_is_bad_request_without_network(config, source):
    recorder = Recorder(source=image_bytes(20, 20))
    with make_client(config, recorder) as client:
        r = client.post("/", json=payload(source_url=source))
    assert r.status_code == 400
    assert r.json()["stage"] == "Received"
    assert recorder.requests == []


def test_fetcher_wraps_invalid_url(config):
    http = create_http_client(config, httpx.MockTransport(Recorder()))
    with pytest.raises(FetchError):
        ImageFetcher(http).fetch("http://[::1")


def test_delivery_wraps_unencodable_token(config):
    recorder = Recorder()
    delivery = DeliveryClient(create_http_client(config, httpx.MockTransport(recorder)), config.delivery_endpoint)
    with pytest.raises(DeliveryError):
        delivery.deliver("io-route-1", "tök", b"jpeg")
    assert delivery.report_error("io-route-1", "tök", 502, "FetchError", "boom") is False
    assert recorder.requests == []


def test_overlong_usercode_is_bad_request_without_network(config):
    recorder = Recorder(source=image_bytes(20, 20))
    url = "http://s/cat.jpg?usercode=" + "W" * (config.max_watermark_length + 1)
    with make_client(config, recorder) as client:
        r = client.post("/", json=payload(url))
    assert r.status_code == 400
    assert recorder.requests == []


def test_usercode_at_length_limit_is_accepted():
    body = as_body(payload("http://s/cat.jpg?usercode=" + "W" * 8))
    assert parse_request(body, "WATERMARK", max_text_length=8).watermark_text == "W" * 8
    with pytest.raises(BadRequest):
        parse_request(body, "WATERMARK", max_text_length=7)


def test_trickling_source_hits_total_deadline():
    config = Config(delivery_endpoint="http://minio.local:9000", http_request_timeout=0.2)

    def handler(request):
        return httpx.Response(200, stream=TrickleStream(chunks=5, delay=0.1))

    http = create_http_client(config, httpx.MockTransport(handler))
    with pytest.raises(FetchError, match="deadline"):
        ImageFetcher(http).fetch(SOURCE_URL)


def test_trickling_output_route_hits_total_deadline():
    config = Config(delivery_endpoint="http://minio.local:9000", http_request_timeout=0.2)

    def handler(request):
        return httpx.Response(200, stream=TrickleStream(chunks=5, delay=0.1))

    delivery = DeliveryClient(create_http_client(config, httpx.MockTransport(handler)), config.delivery_endpoint)
    with pytest.raises(DeliveryError, match="deadline"):
        delivery.deliver("io-route-1", "tok-1", b"jpeg")


def test_body_within_deadline_is_read(config):
    def handler(request):
        return httpx.Response(200, stream=TrickleStream(chunks=3, delay=0.01, chunk=b"ab"))

    http = create_http_client(config, httpx.MockTransport(handler))
    assert ImageFetcher(http).fetch(SOURCE_URL) == b"ababab"


def test_unencodable_buffer_is_encode_error():
    with pytest.raises(EncodeError):
        encode_jpeg(np.zeros((2, 2, 4), dtype=np.float64), 90)


def _failing_encoder(buffer, quality):
    raise EncodeError("encoder exploded")


def test_encode_failure_is_forwarded(config, fonts, monkeypatch):
    monkeypatch.setattr("tilemark.pipeline.encode_jpeg", _failing_encoder)
    recorder = Recorder(source=image_bytes(30, 20))
    pipeline = make_pipeline(config, fonts, recorder)
    outcome = pipeline.run(as_body(payload()))

    assert outcome.state is Stage.FAILED
    assert outcome.failed_at is Stage.ENCODING
    assert outcome.error.kind == "EncodeError"
    assert Stage.DELIVERED not in pipeline.history
    (report,) = recorder.posts
    assert report.headers["x-amz-fwd-error-code"] == "EncodeError"
    assert report.headers["x-amz-fwd-status"] == "500"


def test_encode_failure_http_status(config, monkeypatch):
    monkeypatch.setattr("tilemark.pipeline.encode_jpeg", _failing_encoder)
    with make_client(config, Recorder(source=image_bytes(30, 20))) as client:
        r = client.post("/", json=payload())
    assert r.status_code == 500
    assert r.json()["kind"] == "EncodeError"
    assert r.json()["stage"] == "Encoding"
