from typing import Optional


class SpeedTestError(Exception):
    """Base class for errors that map to a client-visible HTTP status."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidSizeParameter(SpeedTestError):
    status_code = 400
    message = "Invalid size parameter"

    def __init__(self, value: str):
        super().__init__()
        self.value = value


class MissingContentLength(SpeedTestError):
    status_code = 400
    message = "Content-Length header required"


class InvalidContentLength(SpeedTestError):
    status_code = 400
    message = "Invalid Content-Length"

    def __init__(self, value: str):
        super().__init__()
        self.value = value


class UploadStreamError(SpeedTestError):
    status_code = 500
    message = "Upload stream failed"


class AdmissionRejected(SpeedTestError):
    status_code = 503
    message = "Server busy"


class PayloadTooLarge(SpeedTestError):
    status_code = 413
    message = "Payload too large"


class ConfigError(ValueError):
    pass
