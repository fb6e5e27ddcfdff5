"""Tests for lazy, initialize-once model loading."""

import threading
import time

import pytest

from library_lending.errors import ModelLoadError
from library_lending.weights import (
    FaceModels, ModelRegistry, bundled_source, default_sources, directory_source
)


def _models(source):
    return FaceModels(None, None, None, None, source=source)


class CountingSource:

    def __init__(self, name, fail=False, delay=0.0):
        self.name = name
        self.fail = fail
        self.delay = delay
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ModelLoadError(f"{self.name} unreachable")
        return _models(self.name)


class TestModelRegistry:

    def test_loads_lazily_once(self):
        source = CountingSource("primary")
        registry = ModelRegistry([source])

        assert registry.is_loaded is False
        assert source.calls == 0

        first = registry.get()
        second = registry.get()

        assert first is second
        assert registry.is_loaded is True
        assert source.calls == 1

    def test_falls_back_to_secondary_source(self):
        primary = CountingSource("primary", fail=True)
        secondary = CountingSource("secondary")
        registry = ModelRegistry([primary, secondary])

        assert registry.get().source == "secondary"
        assert (primary.calls, secondary.calls) == (1, 1)

    def test_all_sources_failing(self):
        primary = CountingSource("primary", fail=True)
        secondary = CountingSource("secondary", fail=True)
        registry = ModelRegistry([primary, secondary])

        with pytest.raises(ModelLoadError) as exc:
            registry.get()
        assert exc.value.details == {"errors": ["primary unreachable", "secondary unreachable"]}
        assert registry.is_loaded is False

        # A later request tries again instead of caching the failure
        secondary.fail = False
        assert registry.get().source == "secondary"

    def test_concurrent_callers_share_one_load(self):
        source = CountingSource("slow", delay=0.05)
        registry = ModelRegistry([source])
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(registry.get())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert source.calls == 1
        assert len(results) == 8
        assert all(models is results[0] for models in results)

    def test_requires_a_source(self):
        with pytest.raises(ValueError):
            ModelRegistry([])


class TestSources:

    def test_default_sources(self, tmp_path):
        assert default_sources(None) == [bundled_source]
        sources = default_sources(str(tmp_path))
        assert len(sources) == 2
        assert sources[1] is bundled_source

    def test_directory_missing_files(self, tmp_path):
        (tmp_path / "shape_predictor_68_face_landmarks.dat").write_bytes(b"")

        with pytest.raises(ModelLoadError) as exc:
            directory_source(str(tmp_path))()
        assert "mmod_human_face_detector.dat" in exc.value.message
        assert "shape_predictor_68_face_landmarks.dat" not in exc.value.message
