"""
Error taxonomy for the erasure pipeline.

Subsystem failures inside a complete erasure are collected, never
raised to the caller. The exceptions below surface where a caller can
act on them: bad input, illegal state transitions, recovery code
problems, tampered certificates and missing configuration.
"""


class ErasureError(Exception):
    """Base class for erasure pipeline errors."""

    def __init__(self, message: str = "Erasure pipeline error", code: str = "ERASURE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ValidationError(ErasureError):
    """Malformed input (scope, ids, email, code). Never retried."""

    def __init__(self, message: str = "Invalid input", code: str = "VALIDATION_ERROR"):
        super().__init__(message, code)


class ErasureInProgressError(ValidationError):
    """A complete erasure for the same user is already running."""

    def __init__(self, message: str = "Erasure already in progress for this user"):
        super().__init__(message, "ERASURE_IN_PROGRESS")


class InvalidTransitionError(ErasureError):
    """Deletion request status change not allowed by the lifecycle."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move deletion request from {current} to {target}",
            "INVALID_TRANSITION",
        )


class SubjectNotFoundError(ErasureError):
    """The target record does not exist. Deletes treat this as success."""

    def __init__(self, message: str = "Subject not found", code: str = "NOT_FOUND"):
        super().__init__(message, code)


class TransientSubsystemError(ErasureError):
    """Timeout, network or backend failure in one subsystem."""

    def __init__(self, subsystem: str, message: str):
        self.subsystem = subsystem
        super().__init__(f"{subsystem}: {message}", "SUBSYSTEM_UNAVAILABLE")


class SecurityError(ErasureError):
    """Integrity check failed."""

    def __init__(self, message: str = "Security check failed", code: str = "SECURITY_ERROR"):
        super().__init__(message, code)


class CertificateTamperedError(SecurityError):
    """Stored certificate no longer matches its signature."""

    def __init__(self, certificate_id: str):
        self.certificate_id = certificate_id
        super().__init__(
            f"Certificate {certificate_id} failed signature validation",
            "CERTIFICATE_TAMPERED",
        )


class RecoveryCodeError(ErasureError):
    """Base class for recovery code failures."""

    def __init__(self, message: str = "Recovery code rejected", code: str = "RECOVERY_CODE_ERROR"):
        super().__init__(message, code)


class WrongCodeError(RecoveryCodeError):
    def __init__(self, remaining_attempts: int):
        self.remaining_attempts = remaining_attempts
        super().__init__(
            f"Invalid recovery code, {remaining_attempts} attempts remaining",
            "WRONG_CODE",
        )


class CodeExpiredError(RecoveryCodeError):
    def __init__(self):
        super().__init__("Recovery code has expired", "CODE_EXPIRED")


class MaxAttemptsExceededError(RecoveryCodeError):
    def __init__(self):
        super().__init__("Too many failed attempts, request a new code", "MAX_ATTEMPTS_EXCEEDED")


class ConfigurationError(ErasureError):
    """Required configuration is missing. Raised at construction time."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR")
