from __future__ import annotations


class BoothError(Exception):
    """Base class for errors that are reported to the booth user."""


class CameraUnavailableError(BoothError):
    pass


class DetectorLoadError(BoothError):
    pass


class CaptureError(BoothError):
    pass


class LayerResolutionError(BoothError):
    pass


class ResultNotFoundError(BoothError):
    def __init__(self, result_id: int) -> None:
        super().__init__(f"Result {result_id} not found")
        self.result_id = result_id


class ApiError(BoothError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
