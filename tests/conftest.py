import zlib

import mongomock
import numpy as np
import pytest
from fastapi.testclient import TestClient

from faceaccess.errors import ExtractionFailure, ModelNotReadyError
from faceaccess.face_utils import FaceObservation
from faceaccess.main import create_app
from faceaccess.photos import PhotoStorage
from faceaccess.storage import JsonUserStore
from faceaccess.storage_mongo import MongoUserStore
from faceaccess.storage_sqlite import SqliteUserStore

DIM = 128
OPEN_EYES = 0.15  # EAR 0.30
CLOSED_EYES = 0.05  # EAR 0.10


def embedding_for(label: str) -> np.ndarray:
    rng = np.random.default_rng(zlib.crc32(label.encode()))
    v = rng.normal(size=DIM)
    return (v / np.linalg.norm(v)).astype(np.float32)


def make_landmarks(openness: float) -> np.ndarray:
    """68 points where only the eyes matter; EAR == 2 * openness."""
    lm = np.zeros((68, 2))
    for start, x in ((36, 0.0), (42, 2.0)):
        lm[start:start + 6] = [
            [x, 0.0],
            [x + 0.33, -openness],
            [x + 0.66, -openness],
            [x + 1.0, 0.0],
            [x + 0.66, openness],
            [x + 0.33, openness],
        ]
    return lm


def face_bytes(label: str, blink: bool = False) -> bytes:
    return f"face:{label}{':blink' if blink else ''}".encode()


class FakeAnalyzer:
    """
    Stands in for FaceAnalyzer. Image bytes "face:<label>[:blink]" hold one
    face whose embedding is a fixed function of the label; anything else
    has no face.
    """

    def __init__(self, ready: bool = True):
        self.ready = ready
        self.calls = 0

    def extract(self, data: bytes) -> FaceObservation:
        if not self.ready:
            raise ModelNotReadyError()
        self.calls += 1
        text = data.decode(errors="ignore")
        if not text.startswith("face:"):
            raise ExtractionFailure("No face detected in image")
        parts = text.split(":")
        return FaceObservation(
            embedding=embedding_for(parts[1]),
            box=[10.0, 10.0, 110.0, 110.0],
            landmarks=make_landmarks(CLOSED_EYES if "blink" in parts[2:] else OPEN_EYES),
            det_score=0.99,
            age=30,
            gender="female",
        )

    def analyze(self, frame):
        """Frames are lists of encoded faces in tests."""
        return [self.extract(d) for d in frame]

    def load_in_background(self):
        pass


@pytest.fixture(params=["json", "sqlite", "mongodb"])
def store(request, tmp_path):
    if request.param == "json":
        s = JsonUserStore(path=str(tmp_path / "users.json"), history_cap=3)
    elif request.param == "sqlite":
        s = SqliteUserStore(path=str(tmp_path / "users.db"), history_cap=3)
    else:
        s = MongoUserStore(db_name="faceaccess-test", history_cap=3, client=mongomock.MongoClient())
    yield s
    s.close()


@pytest.fixture
def json_store(tmp_path):
    return JsonUserStore(path=str(tmp_path / "users.json"), history_cap=3)


@pytest.fixture
def photos(tmp_path):
    return PhotoStorage(root=tmp_path / "uploads")


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def make_client(json_store, analyzer, photos):
    def _make(**kwargs):
        app = create_app(
            store=kwargs.pop("store", json_store),
            analyzer=kwargs.pop("analyzer", analyzer),
            photos=photos,
            **kwargs,
        )
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client):
    with make_client() as c:
        yield c
