from enrollment_bridge.integrations.moodle.client import (
    MoodleClient,
    MoodleUser,
    generate_password,
    generate_username,
)
from enrollment_bridge.integrations.moodle.errors import (
    ErrorKind,
    MoodleAuthorizationError,
    MoodleConfigurationError,
    MoodleConnectionError,
    MoodleDuplicateError,
    MoodleRateLimitError,
    MoodleServiceError,
    MoodleValidationError,
    classify_error,
)
from enrollment_bridge.integrations.moodle.rate_limiter import MoodleRateLimiter
from enrollment_bridge.integrations.moodle.roles import MoodleRole

__all__ = [
    "ErrorKind",
    "MoodleAuthorizationError",
    "MoodleClient",
    "MoodleConfigurationError",
    "MoodleConnectionError",
    "MoodleDuplicateError",
    "MoodleRateLimitError",
    "MoodleRateLimiter",
    "MoodleRole",
    "MoodleServiceError",
    "MoodleUser",
    "MoodleValidationError",
    "classify_error",
    "generate_password",
    "generate_username",
]
