"""Tests for the imagex HTTP API."""

from __future__ import annotations

import base64
import io
import json
import os
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import pytest
from conftest import FakeDetector, FakeStorage, png_bytes
from fastapi import FastAPI, status
from PIL import Image

from imagex.config import get_settings
from imagex.main import create_app
from imagex.pipeline.handler import ImageHandler
from imagex.pipeline.pillow_engine import PillowEngine
from imagex.processing import PoolSaturatedError, ProcessingPool
from imagex.request.resolver import ImageRequest
from imagex.request.signature import HmacSignatureVerifier

SOURCE = png_bytes(8, 4)


def _init_app_state(app: FastAPI, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    env = {"IMAGEX_SOURCE_BUCKETS": "bucket-a,bucket-b", **env_overrides}
    with patch.dict(os.environ, env):
        settings = get_settings()
    storage = FakeStorage({("bucket-a", "image.png"): SOURCE})
    verifier = HmacSignatureVerifier(settings.signature_secret) if settings.signature_secret else None

    app.state.settings = settings
    app.state.image_request = ImageRequest(settings, storage, signature_verifier=verifier)
    app.state.image_handler = ImageHandler(settings, PillowEngine(), storage, FakeDetector())
    app.state.processing_pool = ProcessingPool(settings)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: ProcessingPool = app.state.processing_pool
    pool.shutdown()


def _default_path(payload: dict[str, object]) -> str:
    return "/" + base64.b64encode(json.dumps(payload).encode()).decode()


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["source_buckets"] == 2
        assert data["max_concurrent"] == 4
        assert data["active_requests"] == 0
        assert data["queued_requests"] == 0
        assert data["rejected_requests"] == 0


class TestImageEndpoint:
    async def test_default_request_resizes(self, client: httpx.AsyncClient) -> None:
        response = await client.get(_default_path({"key": "image.png", "edits": {"resize": {"width": 4}}}))
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "image/png"
        assert response.headers["cache-control"] == "max-age=31536000,public"
        assert Image.open(io.BytesIO(response.content)).size == (4, 2)

    async def test_no_edits_returns_original(self, client: httpx.AsyncClient) -> None:
        response = await client.get(_default_path({"bucket": "bucket-a", "key": "image.png"}))
        assert response.status_code == status.HTTP_200_OK
        assert response.content == SOURCE

    async def test_thumbor_format(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/fit-in/4x4/filters:format(webp)/s3:bucket-a/image.png")
        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "image/webp"
        assert Image.open(io.BytesIO(response.content)).size == (4, 2)

    async def test_missing_image(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/filters:grayscale()/s3:bucket-a/missing.jpg")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {
            "status": 404,
            "code": "NoSuchKey",
            "message": "The specified key does not exist.",
        }

    async def test_disallowed_bucket(self, client: httpx.AsyncClient) -> None:
        response = await client.get(_default_path({"bucket": "other", "key": "image.png"}))
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["code"] == "ImageBucket::CannotAccessBucket"

    async def test_invalid_edit(self, client: httpx.AsyncClient) -> None:
        response = await client.get(_default_path({"key": "image.png", "edits": {"resize": {"width": -1}}}))
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "InvalidResizeException"

    async def test_custom_request_without_signature_support(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/custom/image")
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "RequestTypeError"

    async def test_service_unavailable_when_saturated(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        with patch.object(app.state.processing_pool, "run", AsyncMock(side_effect=PoolSaturatedError(5.0))):
            response = await client.get("/s3:bucket-a/image.png")
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["status"] == 503

    async def test_unexpected_failure(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        failing = MagicMock()
        failing.setup.side_effect = RuntimeError("boom")
        app.state.image_request = failing
        response = await client.get("/s3:bucket-a/image.png")
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["code"] == "InternalError"


class TestAutoWebp:
    async def test_accept_header_switches_format(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEX_AUTO_WEBP="true")
        async for ac in _make_client(app):
            response = await ac.get("/s3:bucket-a/image.png", headers={"Accept": "image/webp,*/*"})
            assert response.status_code == status.HTTP_200_OK
            assert response.headers["content-type"] == "image/webp"

    async def test_without_accept_keeps_format(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEX_AUTO_WEBP="true")
        async for ac in _make_client(app):
            response = await ac.get("/s3:bucket-a/image.png", headers={"Accept": "image/png"})
            assert response.headers["content-type"] == "image/png"
            assert response.content == SOURCE


class TestSignedRequests:
    async def test_valid_signature(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEX_ENABLE_SIGNATURE="true", IMAGEX_SIGNATURE_SECRET="test-secret")
        signature = HmacSignatureVerifier("test-secret").sign("/s3:bucket-a/image.png")
        async for ac in _make_client(app):
            response = await ac.get("/s3:bucket-a/image.png", params={"signature": signature})
            assert response.status_code == status.HTTP_200_OK

    async def test_missing_signature(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEX_ENABLE_SIGNATURE="true", IMAGEX_SIGNATURE_SECRET="test-secret")
        async for ac in _make_client(app):
            response = await ac.get("/s3:bucket-a/image.png")
            assert response.status_code == status.HTTP_400_BAD_REQUEST
            assert response.json()["code"] == "AuthorizationQueryParametersError"

    async def test_wrong_signature(self) -> None:
        app = create_app()
        _init_app_state(app, IMAGEX_ENABLE_SIGNATURE="true", IMAGEX_SIGNATURE_SECRET="test-secret")
        async for ac in _make_client(app):
            response = await ac.get("/s3:bucket-a/image.png", params={"signature": "deadbeef"})
            assert response.status_code == status.HTTP_403_FORBIDDEN
            assert response.json()["code"] == "SignatureDoesNotMatch"
