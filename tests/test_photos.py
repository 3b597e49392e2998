from faceaccess.photos import PhotoStorage


def test_save_and_release(tmp_path):
    photos = PhotoStorage(root=tmp_path / "uploads")
    ref = photos.save(b"jpeg bytes", "me.PNG")
    assert ref.url.startswith("/uploads/")
    assert ref.url.endswith(".png")
    path = photos.path_for(ref.url)
    assert path.read_bytes() == b"jpeg bytes"

    assert photos.release([ref.url]) == 1
    assert not path.exists()
    # already gone
    assert photos.release([ref.url]) == 0


def test_unknown_extension_defaults_to_jpg(tmp_path):
    photos = PhotoStorage(root=tmp_path)
    assert photos.save(b"x", "payload.exe").url.endswith(".jpg")
    assert photos.save(b"x").url.endswith(".jpg")


def test_release_ignores_urls_outside_uploads(tmp_path):
    secret = tmp_path / "secret.txt"
    secret.write_text("keep")
    photos = PhotoStorage(root=tmp_path / "uploads")
    assert photos.path_for("/static/secret.txt") is None
    assert photos.release(["/static/secret.txt", "/uploads/../secret.txt"]) == 0
    assert secret.exists()


def test_release_keeps_going_past_undeletable_files(tmp_path, caplog):
    photos = PhotoStorage(root=tmp_path / "uploads")
    stuck, ok = photos.save(b"a"), photos.save(b"b")
    # a directory in place of the file cannot be unlinked
    path = photos.path_for(stuck.url)
    path.unlink()
    path.mkdir()
    assert photos.release([stuck.url, ok.url]) == 1
    assert not photos.path_for(ok.url).exists()
    assert any("Failed to delete photo" in r.getMessage() for r in caplog.records)
