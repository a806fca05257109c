"""Enrollment error hierarchy."""

from typing import Optional
import uuid


class EnrollmentError(Exception):
    """Base class for enrollment failures."""

    # Internal failures are reported to callers without their detail
    opaque = False

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.correlation_id: Optional[str] = None

    def assign_correlation_id(self) -> str:
        if self.correlation_id is None:
            self.correlation_id = uuid.uuid4().hex
        return self.correlation_id

    @property
    def public_message(self) -> str:
        if self.opaque:
            return f"Certificate enrollment failed (reference: {self.correlation_id or 'n/a'})"
        return self.message

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "detail": self.public_message,
            "field": None if self.opaque else self.field,
            "correlation_id": self.correlation_id,
        }


class ValidationError(EnrollmentError):
    """Caller supplied a malformed value."""
    pass


class InvalidSubjectNameError(ValidationError):
    def __init__(self, message: str):
        super().__init__(message, field="subject_name")


class InvalidSubjectAlternativeNameError(ValidationError):
    def __init__(self, message: str, index: Optional[int] = None):
        field = "subject_alternative_names" if index is None else f"subject_alternative_names[{index}]"
        super().__init__(message, field=field)


class InvalidKeyLengthError(ValidationError):
    def __init__(self, message: str):
        super().__init__(message, field="key_length")


class InvalidKeyUsageError(ValidationError):
    def __init__(self, message: str):
        super().__init__(message, field="key_usages")


class InvalidValidityPeriodError(ValidationError):
    def __init__(self, message: str):
        super().__init__(message, field="validity_days")


class PasswordMismatchError(ValidationError):
    def __init__(self, message: str = "Password does not unlock the certificate bundle"):
        super().__init__(message, field="password")


class PolicyViolationError(EnrollmentError):
    """Request conflicts with template or global policy."""
    pass


class PolicySourceUnavailable(EnrollmentError):
    """The template policy collaborator could not produce a complete catalog."""
    pass


class CryptoError(EnrollmentError):
    """Key generation, signing or parsing failed."""
    opaque = True


class KeyGenerationError(CryptoError):
    pass


class SigningError(CryptoError):
    pass


class MalformedResponseError(CryptoError):
    def __init__(self, message: str):
        super().__init__(message, field="response")


class StoreError(EnrollmentError):
    """The certificate store rejected a read or write."""
    opaque = True


class NotFoundError(EnrollmentError):
    pass


class NoMatchingRequestError(NotFoundError):
    def __init__(self, message: str = "No pending request matches the certificate public key"):
        super().__init__(message, field="response")


class UnknownTemplateError(NotFoundError):
    def __init__(self, template_id: str):
        super().__init__(f"Unknown certificate template: {template_id}", field="template_name")


class OperationTimeoutError(EnrollmentError):
    """The caller's deadline passed before the operation completed."""
    pass


class InternalEnrollmentError(EnrollmentError):
    """Unexpected failure surfaced without detail."""
    opaque = True
