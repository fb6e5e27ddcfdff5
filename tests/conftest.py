"""Pytest configuration and fixtures."""

import io
from datetime import datetime, timedelta

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from library_lending.coordinator import BorrowReturnCoordinator
from library_lending.database import LendingRecordStore
from library_lending.errors import NoFaceDetected
from library_lending.image_processor import image_to_base64, load_image
from library_lending.main import create_app
from library_lending.settings import Settings


def make_png_data_url(width=48, height=32, color=(200, 150, 120)):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return image_to_base64(buffer.getvalue(), "png")


# Small solid-colour captures; the fake extractor tells them apart by pixels.
FACE_A = make_png_data_url(8, 8, (200, 150, 120))
FACE_A_LIVE = make_png_data_url(8, 8, (198, 152, 121))
FACE_B = make_png_data_url(8, 8, (40, 60, 90))
FACE_C = make_png_data_url(8, 8, (120, 120, 30))
NO_FACE = make_png_data_url(8, 8, (0, 0, 0))
NOT_AN_IMAGE = "this is not an image!!"


def _offset(distance: float) -> np.ndarray:
    vector = np.zeros(128)
    vector[0] = distance
    return vector


DESCRIPTORS = {
    FACE_A: _offset(0.0),
    FACE_A_LIVE: _offset(0.1),  # similarity 0.875
    FACE_B: _offset(0.9),       # similarity 0
    FACE_C: _offset(0.6),       # similarity 0.25
}

PAYLOADS_BY_PIXELS = {
    load_image(payload).tobytes(): payload
    for payload in (FACE_A, FACE_A_LIVE, FACE_B, FACE_C, NO_FACE)
}


class FakeExtractor:
    """Maps known captures to fixed descriptors; anything else has no face."""

    def __init__(self, descriptors=None, failures=None):
        self.descriptors = dict(DESCRIPTORS if descriptors is None else descriptors)
        self.failures = dict(failures or {})  # payload -> times to fail before succeeding
        self.calls = []

    def _payload(self, image):
        if isinstance(image, np.ndarray):
            return PAYLOADS_BY_PIXELS.get(image.tobytes())
        return image

    def extract(self, image):
        payload = self._payload(image)
        self.calls.append(payload)
        remaining = self.failures.get(payload, 0)
        if remaining:
            self.failures[payload] = remaining - 1
            raise NoFaceDetected("No face detected in image.")
        if payload not in self.descriptors:
            raise NoFaceDetected("No face detected in image.")
        return self.descriptors[payload]

    def has_face(self, image):
        return self._payload(image) in self.descriptors


class FakeClock:
    """Deterministic clock advancing one minute per call."""

    def __init__(self, start=datetime(2026, 3, 2, 8, 0, 0)):
        self.now = start

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    store = LendingRecordStore("sqlite://", clock=clock)
    store.init_db()
    yield store
    store.dispose()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def coordinator(store, extractor, sleeps):
    return BorrowReturnCoordinator(store, extractor, retry_delay=0.5, sleep=sleeps.append)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        preload_models=False,
        extraction_retry_delay=0.0,
        cors_origins=["*"],
    )


@pytest.fixture
def client(settings, extractor):
    app = create_app(settings, extractor=extractor)
    with TestClient(app) as test_client:
        yield test_client
