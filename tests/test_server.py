"""Tests for the gridstream FastAPI server."""

import hashlib
import os

import pytest
from httpx import ASGITransport, AsyncClient

from gridstream.config import (
    GridStreamConfig,
    ObservabilityConfig,
    ServerConfig,
    StorageConfig,
    UploadConfig,
)
from gridstream.engine import GridFsStorage
from gridstream.server import create_app
from gridstream.store import MemoryChunkStore


# ---------------------------------------------------------------------------
# Helpers: create a test client for a custom config
# ---------------------------------------------------------------------------


def _base_config(**overrides) -> GridStreamConfig:
    """Return a minimal test config with optional overrides."""
    kwargs = dict(
        server=ServerConfig(host="127.0.0.1", port=9020),
        storage=StorageConfig(backend="memory", chunk_size_bytes=4096),
    )
    kwargs.update(overrides)
    return GridStreamConfig(**kwargs)


def _make_client(config: GridStreamConfig, storage: GridFsStorage) -> AsyncClient:
    """Create an AsyncClient for an app serving ``storage``.

    The engine is passed in directly since the lifespan does not run with
    ASGITransport.
    """
    app = create_app(config, storage=storage)
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://testserver")


@pytest.fixture
async def client(store):
    config = _base_config()
    engine = GridFsStorage(config.storage, handle=store, owns_handle=False)
    async with _make_client(config, engine) as ac:
        yield ac
    await engine.close()


class TestUpload:
    """Tests for POST /upload."""

    async def test_upload_two_files(self, client, store):
        a, b = os.urandom(10_000), os.urandom(5_000)
        resp = await client.post(
            "/upload",
            files=[
                ("photos", ("a.jpg", a, "image/jpeg")),
                ("photos", ("b.jpg", b, "image/jpeg")),
            ],
            data={"album": "trip"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["body"] == {"album": "trip"}
        files = body["files"]
        assert [f["originalname"] for f in files] == ["a.jpg", "b.jpg"]
        for entry, data in zip(files, (a, b)):
            assert entry["fieldname"] == "photos"
            assert entry["bucketName"] == "fs"
            assert entry["metadata"] is None
            assert len(entry["filename"]) == 32
            assert entry["grid"]["md5"] == hashlib.md5(data).hexdigest()
            assert entry["grid"]["length"] == len(data)
            assert entry["grid"]["chunkSize"] == 4096
            assert entry["grid"]["contentType"] == "image/jpeg"
            docs = await store.find("fs", entry["filename"])
            assert str(docs[0]["_id"]) == entry["id"]

    async def test_repeated_form_fields_become_list(self, client):
        resp = await client.post(
            "/upload",
            files=[("photos", ("a.jpg", b"abc", "image/jpeg"))],
            data={"tag": ["x", "y"]},
        )
        assert resp.json()["body"] == {"tag": ["x", "y"]}

    async def test_request_headers_echoed(self, client):
        resp = await client.post(
            "/upload",
            files=[("photos", ("a.jpg", b"abc", "image/jpeg"))],
            headers={"X-Album-Owner": "alice"},
        )
        headers = resp.json()["headers"]
        assert headers["x-album-owner"] == "alice"
        assert headers["content-type"].startswith("multipart/form-data")

    async def test_request_id_header(self, client):
        resp = await client.post("/upload", files=[("photos", ("a.jpg", b"abc", "image/jpeg"))])
        assert len(resp.headers["x-request-id"]) == 16

    async def test_no_files(self, client):
        resp = await client.post("/upload", data={"album": "trip"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["files"] == []
        assert body["body"] == {"album": "trip"}

    async def test_field_route_rejects_other_field(self, client, store):
        resp = await client.post(
            "/upload/avatar", files=[("photos", ("a.jpg", b"abc", "image/jpeg"))]
        )
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "LIMIT_UNEXPECTED_FILE"
        assert error["field"] == "photos"
        assert store._files == {}

    async def test_field_route_accepts_field(self, client):
        resp = await client.post(
            "/upload/avatar", files=[("avatar", ("me.png", b"png", "image/png"))]
        )
        assert resp.status_code == 200
        assert resp.json()["files"][0]["fieldname"] == "avatar"


class TestUploadLimits:
    """Tests for the configured field name and file count."""

    async def test_configured_field_name(self, store):
        config = _base_config(upload=UploadConfig(field_name="photos"))
        engine = GridFsStorage(config.storage, handle=store, owns_handle=False)
        async with _make_client(config, engine) as client:
            resp = await client.post(
                "/upload", files=[("avatar", ("a.jpg", b"abc", "image/jpeg"))]
            )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "LIMIT_UNEXPECTED_FILE"

    async def test_max_count(self, store):
        config = _base_config(upload=UploadConfig(max_count=1))
        engine = GridFsStorage(config.storage, handle=store, owns_handle=False)
        async with _make_client(config, engine) as client:
            resp = await client.post(
                "/upload",
                files=[
                    ("photos", ("a.jpg", b"abc", "image/jpeg")),
                    ("photos", ("b.jpg", b"def", "image/jpeg")),
                ],
            )
        assert resp.status_code == 400
        assert "max 1" in resp.json()["error"]["message"]
        assert store._files == {}


class TestUploadHooks:
    """Tests for resolver hooks reading the request context."""

    async def test_metadata_from_form_body(self, store):
        config = _base_config()
        engine = GridFsStorage(
            config.storage,
            handle=store,
            owns_handle=False,
            metadata=lambda ctx, f: {"album": ctx.body["album"], "request": ctx.request_id},
        )
        async with _make_client(config, engine) as client:
            resp = await client.post(
                "/upload",
                files=[("photos", ("a.jpg", b"abc", "image/jpeg"))],
                data={"album": "trip"},
            )
        assert resp.status_code == 200
        metadata = resp.json()["files"][0]["metadata"]
        assert metadata == {"album": "trip", "request": resp.headers["x-request-id"]}

    async def test_hook_failure_returns_aggregated_error(self, store):
        def metadata(ctx, descriptor):
            raise KeyError("album")

        config = _base_config()
        engine = GridFsStorage(config.storage, handle=store, owns_handle=False, metadata=metadata)
        async with _make_client(config, engine) as client:
            resp = await client.post(
                "/upload", files=[("photos", ("a.jpg", b"abc", "image/jpeg"))]
            )

        assert resp.status_code == 400
        body = resp.json()
        assert body["files"] == []
        assert body["error"]["code"] == "UploadError"
        assert body["error"]["field"] == "photos"
        assert body["error"]["cause"]["code"] == "ResolutionError"
        assert body["failures"][0]["filename"] == "a.jpg"
        assert store._files == {}


class TestHealthCheck:
    """Tests for the /health endpoint."""

    async def test_health_ready(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "connection": "ready"}

    async def test_health_starting(self, store):
        config = _base_config()
        engine = GridFsStorage(config.storage, factory=lambda: store)
        async with _make_client(config, engine) as client:
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "starting"
        await engine.close()

    async def test_health_degraded_after_close(self, store):
        config = _base_config()
        engine = GridFsStorage(config.storage, handle=store, owns_handle=False)
        await engine.close()
        async with _make_client(config, engine) as client:
            resp = await client.get("/health")
        assert resp.status_code == 503
        assert resp.json() == {"status": "degraded", "connection": "closed"}

    async def test_health_check_disabled(self, store):
        config = _base_config(observability=ObservabilityConfig(health_check=False))
        engine = GridFsStorage(config.storage, handle=store, owns_handle=False)
        await engine.close()
        async with _make_client(config, engine) as client:
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestMetricsEndpoint:
    """Tests for GET /metrics."""

    async def test_metrics_exposed(self, client):
        await client.post("/upload", files=[("photos", ("a.jpg", b"abc", "image/jpeg"))])
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        body = resp.text
        assert "gridstream_uploads_total" in body
        assert "gridstream_bytes_written_total" in body
        assert "gridstream_uploads_in_flight" in body

    async def test_metrics_disabled(self, store):
        config = _base_config(observability=ObservabilityConfig(metrics=False))
        engine = GridFsStorage(config.storage, handle=store, owns_handle=False)
        async with _make_client(config, engine) as client:
            resp = await client.get("/metrics")
        assert resp.status_code == 404
        await engine.close()
