# faceaccess/errors.py
class FaceAccessError(Exception):
    """Base error; status_code is the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FaceAccessError):
    status_code = 400


class ExtractionFailure(FaceAccessError):
    """No usable face in one image. Soft during enrollment."""

    status_code = 400


class NotFoundError(FaceAccessError):
    status_code = 404


class StorageError(FaceAccessError):
    status_code = 500


class ModelNotReadyError(FaceAccessError):
    status_code = 503

    def __init__(self, message: str = "Models not loaded yet. Please wait."):
        super().__init__(message)
