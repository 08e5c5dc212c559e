"""
Таксономия ошибок ядра.

Каждая ошибка - это HTTPException с тегом в detail, поэтому репозитории
бросают их напрямую, а слой представления получает
``{"error": <тег>, "message": <текст>}`` без дополнительного маппинга.

- ValidationError: некорректный ввод, не повторяется
- ConflictError: нарушение кардинальности или состояния, не повторяется
- NotFoundError: неизвестный идентификатор
- UpstreamError: сбой внешнего сервиса, повторяется только сам внешний вызов
"""

from fastapi import HTTPException, status


class CoreError(HTTPException):
    status_code: int = status.HTTP_400_BAD_REQUEST
    error: str = "CoreError"
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(
            status_code=self.status_code,
            detail={"error": self.error, "message": message},
        )

    def __str__(self):
        return f"{self.error}: {self.message}"


class ValidationError(CoreError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error = "ValidationError"


class ConflictError(CoreError):
    status_code = status.HTTP_409_CONFLICT
    error = "ConflictError"


class NotFoundError(CoreError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "NotFoundError"


class UpstreamError(CoreError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "UpstreamError"
    retryable = True


class InvalidImageSelection(ValidationError):
    error = "InvalidImageSelection"


class ImageNotInSession(ValidationError):
    error = "ImageNotInSession"


class CaregiverUnavailable(ConflictError):
    error = "CaregiverUnavailable"


class PatientAtCapacity(ConflictError):
    error = "PatientAtCapacity"


class ImageAlreadyAssigned(ConflictError):
    error = "ImageAlreadyAssigned"


class ImageInUse(ConflictError):
    error = "ImageInUse"


class SessionFinalized(ConflictError):
    error = "SessionFinalized"


class SessionNotActive(ConflictError):
    error = "SessionNotActive"


class DescriptionAlreadyExists(ConflictError):
    error = "DescriptionAlreadyExists"


class AlreadyScored(ConflictError):
    error = "AlreadyScored"


class ScorerUnavailable(UpstreamError):
    error = "ScorerUnavailable"
