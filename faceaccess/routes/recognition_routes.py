import logging
import math
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from ..dependencies import get_analyzer, get_photos, get_store
from ..errors import NotFoundError, ValidationError
from ..schemas import AttributeObservation, RecognitionLog
from ..services import enroll_user, parse_descriptors, recognize_face

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Recognition"])


# Plain def handlers: FastAPI runs them in its threadpool so model
# inference does not stall other clients' polling.
@router.post("/register")
def register(
    name: Optional[str] = Form(None),
    photos: Optional[List[UploadFile]] = File(None),
    descriptors: Optional[str] = Form(None),
    store=Depends(get_store),
    analyzer=Depends(get_analyzer),
    photo_storage=Depends(get_photos),
):
    uploads = [(p.filename, p.file.read()) for p in photos or []]
    outcome = enroll_user(store, analyzer, photo_storage, name, uploads, parse_descriptors(descriptors))
    record = outcome.record
    return {
        "success": True,
        "message": f"Registered {outcome.success_count} photo(s) for {record.name}",
        "user": {
            "name": record.name,
            "photoCount": len(record.photos),
            "descriptorCount": len(record.embeddings),
            "dominantExpression": outcome.dominant_expression,
        },
        "successCount": outcome.success_count,
        "failureCount": outcome.failure_count,
        "failures": outcome.failures,
    }


@router.post("/recognize")
def recognize(
    request: Request,
    photo: Optional[UploadFile] = File(None),
    frames: Optional[List[UploadFile]] = File(None),
    store=Depends(get_store),
    analyzer=Depends(get_analyzer),
):
    """
    Identify the largest face in photo.
    Optional frames (a short burst after photo) enable the blink check.
    """
    if photo is None:
        raise ValidationError("Photo is required")
    outcome = recognize_face(
        store,
        analyzer,
        photo.file.read(),
        [f.file.read() for f in frames or []],
        threshold=request.app.state.threshold,
        require_liveness=request.app.state.require_liveness,
    )
    obs = outcome.observation
    result = outcome.result
    resp = {
        "success": True,
        "recognized": outcome.recognized,
        "name": result.label if outcome.recognized else None,
        "confidence": result.confidence if result else 0.0,
        # inf (nothing comparable) is not valid JSON
        "distance": result.distance if result and math.isfinite(result.distance) else None,
        "expression": obs.expression or "unknown",
        "expressionConfidence": obs.expression_confidence,
        "age": obs.age,
        "gender": obs.gender,
        "liveness": outcome.liveness,
        "user": None,
    }
    if result is None:
        resp["message"] = "No users registered yet"
    if outcome.record is not None:
        resp["user"] = {
            "name": outcome.record.name,
            "photoCount": len(outcome.record.photos),
            "lastSeen": outcome.record.last_seen.isoformat(),
            "recentExpressions": [o.model_dump(mode="json") for o in outcome.record.attribute_history[-5:]],
        }
    return resp


@router.post("/log-recognition")
def log_recognition(entry: RecognitionLog, store=Depends(get_store)):
    observation = AttributeObservation(
        expression=entry.expression,
        confidence=entry.confidence,
        age=int(round(entry.age)) if entry.age is not None else None,
        gender=entry.gender,
    )
    try:
        store.append_observation(entry.name, observation)
    except NotFoundError:
        logger.warning(f"Recognition logged for unknown user {entry.name}")
        raise
    return {"success": True}
