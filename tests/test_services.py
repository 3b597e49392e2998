import pytest

from faceaccess.errors import StorageError, ValidationError
from faceaccess.photos import PhotoStorage
from faceaccess.services import enroll_user, parse_descriptors

from .conftest import face_bytes


class FailingStore:
    def upsert(self, *args, **kwargs):
        raise StorageError("Failed to write users.json: disk full")


class DiskFullPhotos(PhotoStorage):
    """Fails on the second save."""

    def __init__(self, root):
        super().__init__(root=root)
        self.saves = 0

    def save(self, data, filename=None):
        self.saves += 1
        if self.saves == 2:
            raise StorageError("Failed to save photo: No space left on device")
        return super().save(data, filename)


def test_enroll_three_images_one_without_face(json_store, analyzer, photos):
    uploads = [("a.jpg", face_bytes("alice")), ("b.jpg", b"empty room"), ("c.jpg", face_bytes("alice"))]
    outcome = enroll_user(json_store, analyzer, photos, "alice", uploads)
    assert outcome.success_count == 2
    assert outcome.failure_count == 1
    assert outcome.failures == [{"index": 1, "filename": "b.jpg", "error": "No face detected in image"}]
    assert len(json_store.get("alice").embeddings) == 2


def test_enroll_releases_photos_when_store_fails(analyzer, photos):
    with pytest.raises(StorageError):
        enroll_user(FailingStore(), analyzer, photos, "alice", [("a.jpg", face_bytes("alice"))])
    assert list(photos.root.iterdir()) == []


def test_enroll_releases_saved_photos_when_a_save_fails(json_store, analyzer, tmp_path):
    photos = DiskFullPhotos(tmp_path / "uploads")
    uploads = [("a.jpg", face_bytes("alice")), ("b.jpg", face_bytes("alice")), ("c.jpg", face_bytes("alice"))]
    with pytest.raises(StorageError):
        enroll_user(json_store, analyzer, photos, "alice", uploads)
    assert list(photos.root.iterdir()) == []
    assert json_store.get("alice") is None


def test_enroll_photo_limit(json_store, analyzer, photos):
    uploads = [("a.jpg", face_bytes("alice"))] * 21
    with pytest.raises(ValidationError):
        enroll_user(json_store, analyzer, photos, "alice", uploads)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, None),
        ("  ", None),
        ("[[1, 2.5], null]", [[1.0, 2.5], None]),
    ],
)
def test_parse_descriptors(raw, expected):
    assert parse_descriptors(raw) == expected


@pytest.mark.parametrize("raw", ["{", '{"a": 1}', "[[]]", '[["x"]]', "[3]"])
def test_parse_descriptors_rejects(raw):
    with pytest.raises(ValidationError):
        parse_descriptors(raw)
