"""
dlib model weights shared by the whole process.

Weights are loaded lazily on first use and then reused for the process
lifetime. `ModelRegistry.get()` is safe to call from the request
threadpool: callers that arrive while a load is in flight wait on the
registry lock and receive the same `FaceModels` instance.

Sources are tried in order:
1. A directory of dlib `.dat` files (FACE_MODELS_DIR), e.g. a shared volume.
   Skipped when FACE_MODELS_DIR is unset.
2. The weights bundled with the face_recognition package.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import numpy as np

from library_lending.errors import ModelLoadError

logger = logging.getLogger(__name__)

CNN_DETECTOR_FILE = "mmod_human_face_detector.dat"
SHAPE_PREDICTOR_FILE = "shape_predictor_68_face_landmarks.dat"
FACE_ENCODER_FILE = "dlib_face_recognition_resnet_model_v1.dat"


class FaceModels:
    """Loaded dlib detectors, landmark predictor and face encoder."""

    def __init__(self, hog_detector, cnn_detector, shape_predictor, encoder, source: str):
        self.hog_detector = hog_detector
        self.cnn_detector = cnn_detector
        self.shape_predictor = shape_predictor
        self.encoder = encoder
        self.source = source

    def encode(self, image: np.ndarray, face, num_jitters: int = 1) -> np.ndarray:
        """128-dim descriptor for `face` (a DetectedFace) inside `image`."""
        import dlib

        rect = dlib.rectangle(face.x, face.y, face.x + face.width, face.y + face.height)
        landmarks = self.shape_predictor(image, rect)
        descriptor = self.encoder.compute_face_descriptor(image, landmarks, num_jitters)
        return np.array(descriptor, dtype=np.float64)


ModelSource = Callable[[], FaceModels]


def directory_source(models_dir: str) -> ModelSource:
    """Load weights from a directory holding the three dlib model files."""

    def load() -> FaceModels:
        root = Path(models_dir)
        paths = {name: root / name for name in (CNN_DETECTOR_FILE, SHAPE_PREDICTOR_FILE, FACE_ENCODER_FILE)}
        missing = [name for name, path in paths.items() if not path.is_file()]
        if missing:
            raise ModelLoadError(f"Missing model files in {root}: {', '.join(missing)}")

        import dlib

        try:
            return FaceModels(
                hog_detector=dlib.get_frontal_face_detector(),
                cnn_detector=dlib.cnn_face_detection_model_v1(str(paths[CNN_DETECTOR_FILE])),
                shape_predictor=dlib.shape_predictor(str(paths[SHAPE_PREDICTOR_FILE])),
                encoder=dlib.face_recognition_model_v1(str(paths[FACE_ENCODER_FILE])),
                source=str(root),
            )
        except RuntimeError as e:
            raise ModelLoadError(f"Could not deserialize models from {root}: {e}")

    return load


def bundled_source() -> FaceModels:
    """Reuse the weights face_recognition loads from face_recognition_models."""
    try:
        from face_recognition import api
    except (ImportError, RuntimeError) as e:
        raise ModelLoadError(f"face_recognition models unavailable: {e}")

    return FaceModels(
        hog_detector=api.face_detector,
        cnn_detector=api.cnn_face_detector,
        shape_predictor=api.pose_predictor_68_point,
        encoder=api.face_encoder,
        source="face_recognition_models",
    )


def default_sources(models_dir: Optional[str] = None) -> List[ModelSource]:
    sources: List[ModelSource] = []
    if models_dir:
        sources.append(directory_source(models_dir))
    sources.append(bundled_source)
    return sources


class ModelRegistry:
    """Initialize-once holder for the process-wide FaceModels."""

    def __init__(self, sources: Sequence[ModelSource]):
        if not sources:
            raise ValueError("At least one model source is required")
        self._sources = list(sources)
        self._models: Optional[FaceModels] = None
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._models is not None

    def get(self) -> FaceModels:
        models = self._models
        if models is not None:
            return models

        with self._lock:
            if self._models is None:
                self._models = self._load()
            return self._models

    def _load(self) -> FaceModels:
        errors = []
        for source in self._sources:
            try:
                models = source()
            except ModelLoadError as e:
                logger.warning("Model source failed: %s", e.message)
                errors.append(e.message)
                continue
            logger.info("Face models loaded from %s", models.source)
            return models

        raise ModelLoadError(
            "Failed to load face recognition models from every source",
            details={"errors": errors},
        )
