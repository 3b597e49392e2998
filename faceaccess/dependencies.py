from fastapi import Request

from .face_utils import FaceAnalyzer
from .photos import PhotoStorage
from .storage import UserStore


def get_store(request: Request) -> UserStore:
    return request.app.state.store


def get_analyzer(request: Request) -> FaceAnalyzer:
    return request.app.state.analyzer


def get_photos(request: Request) -> PhotoStorage:
    return request.app.state.photos
