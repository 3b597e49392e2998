# faceaccess/services.py
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import IMG_MAX_MB, MATCH_THRESHOLD, MAX_PHOTOS, REQUIRE_LIVENESS
from .errors import ExtractionFailure, ModelNotReadyError, StorageError, ValidationError
from .face_utils import FaceObservation
from .liveness import is_live
from .matcher import MatchResult, match
from .schemas import UserRecord

logger = logging.getLogger(__name__)

Upload = Tuple[Optional[str], bytes]


@dataclass
class EnrollmentOutcome:
    record: UserRecord
    success_count: int
    failures: List[dict] = field(default_factory=list)
    dominant_expression: str = "unknown"

    @property
    def failure_count(self) -> int:
        return len(self.failures)


@dataclass
class RecognitionOutcome:
    observation: FaceObservation
    result: Optional[MatchResult]
    liveness: Optional[bool] = None
    recognized: bool = False
    record: Optional[UserRecord] = None


def parse_descriptors(raw: Optional[str]) -> Optional[List[Optional[List[float]]]]:
    """
    Precomputed descriptors sent by a browser client: a JSON list with one
    entry per photo, null where the client found no face.
    """
    if raw is None or not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("descriptors must be valid JSON")
    if not isinstance(data, list):
        raise ValidationError("descriptors must be a list")
    out = []
    for entry in data:
        if entry is None:
            out.append(None)
        elif isinstance(entry, list) and entry and all(isinstance(x, (int, float)) for x in entry):
            out.append([float(x) for x in entry])
        else:
            raise ValidationError("each descriptor must be a non-empty list of numbers or null")
    return out


def _check_size(filename: Optional[str], data: bytes) -> None:
    if len(data) > IMG_MAX_MB * 1024 * 1024:
        raise ValidationError(f"Image {filename or 'upload'} exceeds {IMG_MAX_MB}MB")


def enroll_user(
    store,
    analyzer,
    photos,
    name: Optional[str],
    uploads: Sequence[Upload],
    descriptors: Optional[List[Optional[List[float]]]] = None,
) -> EnrollmentOutcome:
    """
    Register (or add samples to) a user.

    Images without a face are dropped and reported per image. Nothing is
    persisted unless at least one image yields a descriptor.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("Name is required")
    if not uploads:
        raise ValidationError("At least one photo is required")
    if len(uploads) > MAX_PHOTOS:
        raise ValidationError(f"At most {MAX_PHOTOS} photos per request")
    if descriptors is not None and len(descriptors) != len(uploads):
        raise ValidationError("descriptors must have one entry per photo")
    if descriptors is None and not analyzer.ready:
        raise ModelNotReadyError()

    kept: List[Upload] = []
    observations: List[FaceObservation] = []
    failures: List[dict] = []
    for index, (filename, data) in enumerate(uploads):
        _check_size(filename, data)
        try:
            if descriptors is not None:
                if descriptors[index] is None:
                    raise ExtractionFailure("No face detected in image")
                observation = FaceObservation(embedding=np.asarray(descriptors[index], dtype=np.float32))
            else:
                observation = analyzer.extract(data)
        except ExtractionFailure as e:
            logger.info(f"Enrollment of {name}: photo {index} ({filename}) rejected: {e.message}")
            failures.append({"index": index, "filename": filename, "error": e.message})
            continue
        kept.append((filename, data))
        observations.append(observation)

    if not observations:
        raise ValidationError("No faces detected in any uploaded photos")

    refs = []
    try:
        for filename, data in kept:
            refs.append(photos.save(data, filename))
        record = store.upsert(
            name,
            [o.embedding.tolist() for o in observations],
            refs,
            [o.to_attributes() for o in observations],
        )
    except (StorageError, ValidationError):
        photos.release([r.url for r in refs])
        raise

    logger.info(f"Registered {len(observations)} photo(s) for {name} ({len(failures)} rejected)")
    return EnrollmentOutcome(
        record=record,
        success_count=len(observations),
        failures=failures,
        dominant_expression=observations[0].expression or "unknown",
    )


def recognize_face(
    store,
    analyzer,
    photo: bytes,
    frames: Sequence[bytes] = (),
    threshold: float = MATCH_THRESHOLD,
    require_liveness: bool = REQUIRE_LIVENESS,
) -> RecognitionOutcome:
    """
    Match the largest face of photo against the current store snapshot.

    Extra frames feed the blink detector; liveness stays None without them.
    When liveness is required, a match without a detected blink is not
    recognized.
    """
    if not analyzer.ready:
        raise ModelNotReadyError()
    _check_size("photo", photo)
    observation = analyzer.extract(photo)

    liveness = None
    if frames:
        landmarks = [observation.landmarks]
        for data in frames:
            try:
                landmarks.append(analyzer.extract(data).landmarks)
            except ExtractionFailure:
                landmarks.append(None)
        liveness = is_live(landmarks)

    candidates = store.labeled_descriptors()
    if not candidates:
        return RecognitionOutcome(observation=observation, result=None, liveness=liveness)

    result = match(observation.embedding, candidates, threshold)
    recognized = result.recognized and (bool(liveness) or not require_liveness)
    record = None
    if recognized:
        record = store.append_observation(result.label, observation.to_attributes())
        logger.info(f"Recognized {result.label} at distance {result.distance:.3f}")
    elif result.recognized:
        logger.info(f"Matched {result.label} but no blink detected, denying")
    else:
        logger.info(f"No match (best distance {result.distance:.3f})")
    return RecognitionOutcome(
        observation=observation, result=result, liveness=liveness, recognized=recognized, record=record
    )
