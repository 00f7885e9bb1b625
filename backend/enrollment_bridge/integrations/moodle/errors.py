from enum import StrEnum


class ErrorKind(StrEnum):
    DUPLICATE = "duplicate"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMITED = "rate_limited"


class MoodleConfigurationError(RuntimeError):
    pass


class MoodleServiceError(RuntimeError):
    retryable: bool = True
    error_code: str = "moodle_error"
    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, context: dict | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


class MoodleConnectionError(MoodleServiceError):
    retryable = True
    error_code = "moodle_connection_error"
    kind = ErrorKind.TRANSIENT


class MoodleAuthorizationError(MoodleServiceError):
    retryable = False
    error_code = "moodle_authorization_error"
    kind = ErrorKind.PERMANENT


class MoodleValidationError(MoodleServiceError):
    retryable = False
    error_code = "moodle_validation_error"
    kind = ErrorKind.PERMANENT


class MoodleDuplicateError(MoodleServiceError):
    retryable = False
    error_code = "moodle_duplicate"
    kind = ErrorKind.DUPLICATE


class MoodleRateLimitError(MoodleServiceError):
    retryable = True
    error_code = "moodle_rate_limited"
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        max_attempts: int | None,
        retry_after_seconds: int,
        *,
        context: dict | None = None,
    ) -> None:
        if max_attempts is None:
            message = f"Moodle API rate limit exceeded (remote), retry after {retry_after_seconds}s"
        else:
            message = f"Moodle API rate limit exceeded: max {max_attempts} calls, retry after {retry_after_seconds}s"
        super().__init__(message, context=context)
        self.max_attempts = max_attempts
        self.retry_after_seconds = retry_after_seconds


# Moodle web-service error codes that point at credentials or capabilities.
_AUTHORIZATION_ERROR_CODES = {
    "invalidtoken",
    "accessexception",
    "nopermissions",
    "servicerequireslogin",
    "forbiddenwsuser",
    "wsaccessuserdeleted",
    "wsaccessusersuspended",
}


def error_for_remote_exception(function: str, payload: dict) -> MoodleServiceError:
    error_code = str(payload.get("errorcode") or "unknown")
    message = str(payload.get("message") or "Unknown Moodle error")
    context = {"function": function, "errorcode": error_code}
    if error_code in _AUTHORIZATION_ERROR_CODES:
        return MoodleAuthorizationError(f"Moodle Error [{error_code}]: {message}", context=context)
    if "already exists" in message.lower():
        return MoodleDuplicateError(f"Moodle Error [{error_code}]: {message}", context=context)
    return MoodleValidationError(f"Moodle Error [{error_code}]: {message}", context=context)


def error_for_http_status(
    function: str,
    status_code: int,
    body: str,
    retry_after_seconds: int = 0,
) -> MoodleServiceError:
    context = {"function": function, "status": status_code, "body": body[:500]}
    if status_code == 401:
        return MoodleAuthorizationError("Unauthorized - Invalid Moodle token", context=context)
    if status_code == 403:
        return MoodleAuthorizationError("Forbidden - Insufficient permissions", context=context)
    if status_code == 429:
        return MoodleRateLimitError(None, retry_after_seconds, context=context)
    if status_code >= 500:
        return MoodleConnectionError("Moodle server error", context=context)
    return MoodleConnectionError(f"HTTP Error {status_code}", context=context)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, MoodleServiceError):
        return exc.kind
    return ErrorKind.TRANSIENT
