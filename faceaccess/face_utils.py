# faceaccess/face_utils.py
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np

from .config import DET_SIZE, INSIGHTFACE_MODEL
from .errors import ExtractionFailure, ModelNotReadyError
from .schemas import AttributeObservation

logger = logging.getLogger(__name__)

# detection + embedding + age/gender + 68 landmarks for blink detection
ALLOWED_MODULES = ["detection", "recognition", "genderage", "landmark_3d_68"]


@dataclass
class FaceObservation:
    """Everything the analysis model reports about one detected face."""

    embedding: np.ndarray
    box: Optional[List[float]] = None
    landmarks: Optional[np.ndarray] = None
    det_score: Optional[float] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    expression: Optional[str] = None
    expression_confidence: Optional[float] = None

    def to_attributes(self) -> AttributeObservation:
        return AttributeObservation(
            expression=self.expression or "unknown",
            confidence=self.expression_confidence,
            age=self.age,
            gender=self.gender,
        )


def read_imagefile_bytes(file_bytes: bytes) -> Optional[np.ndarray]:
    """
    Converts uploaded image bytes to an OpenCV BGR image.
    Returns None when the bytes are not a decodable image.
    """
    arr = np.frombuffer(file_bytes, dtype=np.uint8)
    if arr.size == 0:
        return None
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)


def _box_area(face) -> float:
    x1, y1, x2, y2 = face.bbox
    return float((x2 - x1) * (y2 - y1))


def _to_observation(face) -> FaceObservation:
    # InsightFace Face objects answer None for attributes a model did not fill
    landmarks = face.landmark_3d_68
    sex = face.sex
    gender = {"M": "male", "F": "female"}.get(sex) if sex is not None else None
    return FaceObservation(
        embedding=np.asarray(face.normed_embedding, dtype=np.float32),
        box=face.bbox.tolist(),
        landmarks=np.asarray(landmarks)[:, :2] if landmarks is not None else None,
        det_score=float(face.det_score),
        age=int(face.age) if face.age is not None else None,
        gender=gender,
    )


class FaceAnalyzer:
    """
    Thin wrapper over insightface.app.FaceAnalysis.

    The model is heavy to load, so the service starts it in a background
    thread and answers 503 until it is ready.
    """

    def __init__(self, model_name: str = INSIGHTFACE_MODEL, det_size=DET_SIZE, providers=None):
        self.model_name = model_name
        self.det_size = tuple(det_size)
        self.providers = providers or ["CPUExecutionProvider"]
        self._app = None
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._app is not None

    def load(self) -> None:
        with self._lock:
            if self._app is not None:
                return
            from insightface.app import FaceAnalysis

            logger.info(f"Loading InsightFace model {self.model_name}")
            try:
                app = FaceAnalysis(name=self.model_name, allowed_modules=ALLOWED_MODULES, providers=self.providers)
                app.prepare(ctx_id=0, det_size=self.det_size)
            except Exception as e:
                logger.error(f"Failed to load InsightFace model {self.model_name}: {e}")
                raise
            self._app = app
            logger.info("InsightFace model loaded")

    def load_in_background(self) -> threading.Thread:
        def _run():
            try:
                self.load()
            except Exception:
                logger.exception("Background model load failed")

        thread = threading.Thread(target=_run, name="face-model-loader", daemon=True)
        thread.start()
        return thread

    def analyze(self, img: np.ndarray) -> List[FaceObservation]:
        """All faces in a decoded BGR frame, largest first."""
        if self._app is None:
            raise ModelNotReadyError()
        faces = self._app.get(img)
        return [_to_observation(f) for f in sorted(faces, key=_box_area, reverse=True)]

    def extract(self, file_bytes: bytes) -> FaceObservation:
        """
        Largest face of an encoded image.
        Raises ExtractionFailure when the image cannot be decoded or has no face.
        """
        img = read_imagefile_bytes(file_bytes)
        if img is None:
            raise ExtractionFailure("Invalid image payload")
        faces = self.analyze(img)
        if not faces:
            raise ExtractionFailure("No face detected in image")
        return faces[0]
