from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhotoRef(BaseModel):
    url: str
    uploaded_at: datetime = Field(default_factory=utcnow)


class AttributeObservation(BaseModel):
    expression: str = "unknown"
    confidence: Optional[float] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class UserRecord(BaseModel):
    name: str
    embeddings: List[List[float]] = Field(default_factory=list)
    photos: List[PhotoRef] = Field(default_factory=list)
    attribute_history: List[AttributeObservation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)

    @property
    def photo_urls(self) -> List[str]:
        return [p.url for p in self.photos]

    def summary(self, history: Optional[int] = 10) -> dict:
        observations = self.attribute_history if history is None else self.attribute_history[-history:]
        return {
            "name": self.name,
            "photoCount": len(self.photos),
            "expressionHistory": [o.model_dump(mode="json") for o in observations],
            "createdAt": self.created_at.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
        }

    def detail(self) -> dict:
        out = self.summary(history=None)
        out["photos"] = [p.model_dump(mode="json") for p in self.photos]
        out["descriptorCount"] = len(self.embeddings)
        return out


# --- API request bodies ---
class RecognitionLog(BaseModel):
    name: str = Field(..., min_length=1)
    expression: str = "neutral"
    confidence: Optional[float] = None
    age: Optional[float] = None
    gender: Optional[str] = None
