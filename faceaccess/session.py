# faceaccess/session.py
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np

from .config import MATCH_THRESHOLD, REQUIRE_LIVENESS, RESULT_HOLD_SECONDS
from .liveness import BlinkDetector
from .matcher import MatcherCache

logger = logging.getLogger(__name__)

GRANTED = "granted"
DENIED = "denied"
NOT_LIVE = "not_live"
IDLE = "idle"


@dataclass
class FaceResult:
    label: str
    distance: float
    confidence: float
    status: str
    box: Optional[List[float]] = None
    live: Optional[bool] = None
    age: Optional[int] = None
    gender: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.status == GRANTED


@dataclass
class Tick:
    results: List[FaceResult] = field(default_factory=list)
    state: str = IDLE
    announcement: Optional[str] = None
    held: bool = False


def announcement_for(state: str, results: List[FaceResult]) -> Optional[str]:
    if state.startswith(GRANTED):
        names = ", ".join(r.label for r in results if r.granted)
        return f"Access granted. Welcome {names}"
    if state == NOT_LIVE:
        return "Please blink to confirm you are live"
    if state == DENIED:
        return "Access denied"
    return None


class RecognitionSession:
    """
    Per-client live recognition state.

    Owns its matcher cache (rebuilt when the store changes), a blink
    window per recognized label, the result hold window and the last
    announced state, so nothing is shared between sessions.
    """

    def __init__(
        self,
        store,
        analyzer,
        threshold: float = MATCH_THRESHOLD,
        require_liveness: bool = REQUIRE_LIVENESS,
        hold_seconds: float = RESULT_HOLD_SECONDS,
        notifier=None,
        liveness_factory=BlinkDetector,
        clock=time.monotonic,
    ):
        self.matcher = MatcherCache(store, threshold)
        self.analyzer = analyzer
        self.require_liveness = require_liveness
        self.hold_seconds = hold_seconds
        self.notifier = notifier
        self.liveness_factory = liveness_factory
        self.liveness: Dict[str, BlinkDetector] = {}
        self.clock = clock
        self.state = IDLE
        self.last = Tick()
        self._held_until = 0.0

    def invalidate(self) -> None:
        self.matcher.invalidate()

    def _blink_window(self, label: str) -> BlinkDetector:
        if label not in self.liveness:
            self.liveness[label] = self.liveness_factory()
        return self.liveness[label]

    def _evaluate(self, face) -> FaceResult:
        result = self.matcher.match(face.embedding)
        # only a face's own blinks count towards its liveness
        alive = self._blink_window(result.label).update(face.landmarks) if result.recognized else None
        if not result.recognized:
            status = DENIED
        elif self.require_liveness and not alive:
            status = NOT_LIVE
        else:
            status = GRANTED
        return FaceResult(
            label=result.label,
            distance=result.distance,
            confidence=result.confidence,
            status=status,
            box=face.box,
            live=alive,
            age=face.age,
            gender=face.gender,
        )

    def _state_for(self, results: List[FaceResult]) -> str:
        if not results:
            return IDLE
        granted = sorted(r.label for r in results if r.granted)
        if granted:
            return f"{GRANTED}:{','.join(granted)}"
        if any(r.status == NOT_LIVE for r in results):
            return NOT_LIVE
        return DENIED

    def tick(self, frame: np.ndarray) -> Tick:
        now = self.clock()
        if now < self._held_until:
            return Tick(results=self.last.results, state=self.state, held=True)

        results = [self._evaluate(face) for face in self.analyzer.analyze(frame)]
        state = self._state_for(results)
        announcement = None
        if state != self.state:
            announcement = announcement_for(state, results)
            logger.info(f"Session state {self.state} -> {state}")
            self.state = state
        # keep sampling while waiting for a blink
        if results and state != NOT_LIVE:
            self._held_until = now + self.hold_seconds

        if self.notifier is not None:
            for r in results:
                if r.granted:
                    self.notifier.notify(
                        r.label,
                        {
                            "time": datetime.now(timezone.utc).isoformat(),
                            "confidence": r.confidence,
                            "live": r.live,
                            "age": r.age,
                            "gender": r.gender,
                        },
                    )

        self.last = Tick(results=results, state=state, announcement=announcement)
        return self.last
