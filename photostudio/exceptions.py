"""
Exception hierarchy for the PhotoStudio backend.

ServiceError subclasses carry an HTTP status and a machine-readable code and
are rendered as JSON by the API error middleware. ImageGenerationError
subclasses describe how a call to the AI capability failed so the retry
handler can decide whether another attempt makes sense.
"""
from typing import Optional


class PhotoStudioError(Exception):
    """Base exception for the application"""
    pass


class ServiceError(PhotoStudioError):
    """Error that is reported to the API caller"""
    status = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(ServiceError):
    status = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    status = 401
    code = "UNAUTHORIZED"


class ForbiddenError(ServiceError):
    status = 403
    code = "FORBIDDEN"


class NotFoundError(ServiceError):
    status = 404
    code = "NOT_FOUND"


class ConflictError(ServiceError):
    status = 409
    code = "CONFLICT"


class ServiceUnavailableError(ServiceError):
    status = 503
    code = "SERVICE_UNAVAILABLE"


# ==================== AI CAPABILITY ====================

class ImageGenerationError(PhotoStudioError):
    """Non-retryable failure of the AI capability"""
    retryable = False


class TransientGenerationError(ImageGenerationError):
    """Rate limiting, 5xx, dropped connections or an empty model answer"""
    retryable = True


class GenerationTimeoutError(ImageGenerationError):
    """The call exceeded its time budget"""
    pass


class ContentPolicyError(ImageGenerationError):
    """The model refused the prompt"""
    pass


class MissingCredentialsError(ImageGenerationError):
    """API key is absent or rejected"""
    pass


# ==================== JOB QUEUE ====================

class QueueUnavailableError(PhotoStudioError):
    """Job queue is not running"""
    pass


class DuplicateJobError(PhotoStudioError):
    """A job with the same identity is already queued or running"""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is already active")
        self.job_id = job_id
