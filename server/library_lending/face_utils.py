"""
Face Detection, Descriptors & Similarity (dlib Version)

Detection runs a fixed fallback chain of dlib detector configurations,
cheapest first. Phone-camera captures at a library desk are often badly
lit or partly cropped, so a single configuration misses too many faces.

Encoding: 128-dimensional dlib ResNet face descriptors.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np
from pydantic import BaseModel, Field

from library_lending.errors import NoFaceDetected
from library_lending.image_processor import ImageInput, load_image, resize_to_fit
from library_lending.weights import FaceModels, ModelRegistry

logger = logging.getLogger(__name__)


class DetectedFace(BaseModel):
    """Face bounding box in original image coordinates."""

    x: int = Field(..., description="Top-left X coordinate", ge=0)
    y: int = Field(..., description="Top-left Y coordinate", ge=0)
    width: int = Field(..., description="Bounding box width", gt=0)
    height: int = Field(..., description="Bounding box height", gt=0)
    score: float = Field(..., description="Detector score (HOG margin or CNN confidence)")
    strategy: str = Field(..., description="Detection strategy that produced this face")

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_dict(self) -> dict:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "score": round(self.score, 4),
            "strategy": self.strategy,
        }


def _faces_from_rects(rects, scores, scale: float, image_shape, strategy: str) -> List[DetectedFace]:
    """Map dlib rectangles found on a scaled image back onto the original image."""
    height, width = image_shape[:2]
    faces = []
    for rect, score in zip(rects, scores):
        left = max(0, int(round(rect.left() / scale)))
        top = max(0, int(round(rect.top() / scale)))
        right = min(width, int(round(rect.right() / scale)))
        bottom = min(height, int(round(rect.bottom() / scale)))
        if right <= left or bottom <= top:
            continue
        faces.append(DetectedFace(
            x=left,
            y=top,
            width=right - left,
            height=bottom - top,
            score=float(score),
            strategy=strategy,
        ))
    return faces


# ============================================================================
# Detection Strategies
# ============================================================================

class DetectionStrategy:
    """One detector configuration in the fallback chain."""

    name = "strategy"
    pick_largest = False

    def find_faces(self, image: np.ndarray, models: FaceModels) -> List[DetectedFace]:
        raise NotImplementedError

    def detect(self, image: np.ndarray, models: FaceModels) -> Optional[DetectedFace]:
        faces = self.find_faces(image, models)
        if not faces:
            return None
        # Multi-face mode assumes the largest box is the person at the desk
        if self.pick_largest:
            return max(faces, key=lambda face: face.area)
        return max(faces, key=lambda face: face.score)


class HogStrategy(DetectionStrategy):
    """
    dlib HOG frontal detector.

    Args:
        input_size: longest image side fed to the detector
        score_threshold: dlib `adjust_threshold`; negative values are more lenient
        upsample: times to upsample before detecting (finds smaller faces)
        pick_largest: select the largest face instead of the best scoring one
    """

    def __init__(
        self,
        name: str,
        input_size: int,
        score_threshold: float,
        upsample: int = 0,
        pick_largest: bool = False,
    ):
        self.name = name
        self.input_size = input_size
        self.score_threshold = score_threshold
        self.upsample = upsample
        self.pick_largest = pick_largest

    def find_faces(self, image: np.ndarray, models: FaceModels) -> List[DetectedFace]:
        scaled, scale = resize_to_fit(image, self.input_size)
        rects, scores, _ = models.hog_detector.run(scaled, self.upsample, self.score_threshold)
        return _faces_from_rects(rects, scores, scale, image.shape, self.name)


class CnnStrategy(DetectionStrategy):
    """dlib MMOD CNN detector. Slower, but copes with angled and dim faces."""

    def __init__(self, name: str, input_size: int, min_confidence: float, upsample: int = 0):
        self.name = name
        self.input_size = input_size
        self.min_confidence = min_confidence
        self.upsample = upsample

    def find_faces(self, image: np.ndarray, models: FaceModels) -> List[DetectedFace]:
        scaled, scale = resize_to_fit(image, self.input_size)
        detections = [
            d for d in models.cnn_detector(scaled, self.upsample)
            if d.confidence >= self.min_confidence
        ]
        return _faces_from_rects(
            [d.rect for d in detections],
            [d.confidence for d in detections],
            scale,
            image.shape,
            self.name,
        )


def default_strategies() -> List[DetectionStrategy]:
    return [
        HogStrategy("hog-320", input_size=320, score_threshold=-0.2),
        HogStrategy("hog-640", input_size=640, score_threshold=-0.5, upsample=1),
        CnnStrategy("cnn-640", input_size=640, min_confidence=0.3),
        HogStrategy("hog-largest", input_size=320, score_threshold=-0.5, upsample=1, pick_largest=True),
    ]


# ============================================================================
# Detection Engine & Descriptor Extraction
# ============================================================================

class FaceDetectionEngine:
    """Runs detection strategies in order and returns the first face found."""

    def __init__(self, registry: ModelRegistry, strategies: Optional[Sequence[DetectionStrategy]] = None):
        self.registry = registry
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        if not self.strategies:
            raise ValueError("At least one detection strategy is required")

    def detect(self, image: np.ndarray) -> DetectedFace:
        models = self.registry.get()

        for strategy in self.strategies:
            try:
                face = strategy.detect(image, models)
            except RuntimeError as e:
                logger.warning("Detection strategy %s failed: %s", strategy.name, e)
                continue

            if face is not None:
                logger.debug("Face found by %s at %s", strategy.name, face.to_dict())
                return face
            logger.debug("Strategy %s found no face, falling back", strategy.name)

        raise NoFaceDetected(
            "No face detected in image. Please ensure the face is clearly visible, "
            "well lit and facing the camera.",
            details={"strategies": [s.name for s in self.strategies]},
        )

    def quick_check(self, image: np.ndarray) -> bool:
        """Fast "is there a face" check using only the first strategy."""
        models = self.registry.get()
        try:
            return self.strategies[0].detect(image, models) is not None
        except RuntimeError as e:
            logger.warning("Quick face check failed: %s", e)
            return False


class DescriptorExtractor:
    """Image -> 128-dim face descriptor."""

    def __init__(self, engine: FaceDetectionEngine, num_jitters: int = 1):
        self.engine = engine
        self.num_jitters = num_jitters

    def extract(self, image: ImageInput) -> np.ndarray:
        pixels = load_image(image)
        face = self.engine.detect(pixels)
        models = self.engine.registry.get()
        return models.encode(pixels, face, self.num_jitters)

    def has_face(self, image: ImageInput) -> bool:
        return self.engine.quick_check(load_image(image))


# ============================================================================
# Similarity
# ============================================================================

class SimilarityScorer:
    """
    Euclidean distance between descriptors mapped onto [0, 1].

    similarity = clamp(1 - d / max_distance, 0, 1)

    dlib descriptors of the same person are usually < 0.6 apart; anything
    at or beyond `max_distance` scores 0. This is a linear calibration,
    not a probability.
    """

    DEFAULT_MAX_DISTANCE = 0.8

    def __init__(self, max_distance: float = DEFAULT_MAX_DISTANCE):
        if max_distance <= 0:
            raise ValueError("max_distance must be positive")
        self.max_distance = max_distance

    def distance(self, descriptor1: np.ndarray, descriptor2: np.ndarray) -> float:
        a = np.asarray(descriptor1, dtype=np.float64)
        b = np.asarray(descriptor2, dtype=np.float64)
        if a.shape != b.shape:
            raise ValueError(f"Descriptor shapes differ: {a.shape} vs {b.shape}")
        return float(np.linalg.norm(a - b))

    def similarity(self, distance: float) -> float:
        return float(min(1.0, max(0.0, 1.0 - distance / self.max_distance)))

    def score(self, descriptor1: np.ndarray, descriptor2: np.ndarray) -> float:
        return self.similarity(self.distance(descriptor1, descriptor2))
