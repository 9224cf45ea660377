"""Service error hierarchy for the render pipeline.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (collaborator unavailable, rate limits, timeouts)
- PermanentError: Non-retryable errors (validation, configuration, rejected input)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Configuration errors
    """

    pass


# Collaborator availability errors
class ClassifierUnavailableError(TransientError):
    """Classifier could not be reached or timed out."""

    pass


class GeneratorUnavailableError(TransientError):
    """Image generator could not be reached or timed out."""

    pass


class EvaluatorUnavailableError(TransientError):
    """QC evaluator could not be reached or timed out."""

    pass


# Collaborator rejections
class ClassificationError(PermanentError):
    """Classifier rejected the image or returned an unusable analysis."""

    pass


class GenerationError(PermanentError):
    """Generator rejected the request (content policy, bad input)."""

    pass


class EvaluationError(PermanentError):
    """QC evaluator returned an unusable answer."""

    pass


# Validation errors
class ConfigurationError(PermanentError):
    """Pipeline misconfiguration detected at a mutation boundary."""

    pass


class InvalidParametersError(ConfigurationError):
    """Generation parameters failed validation (steps, cfg scale, structure scale)."""

    pass


class AttemptLimitError(PermanentError):
    """Attempt number outside the allowed 1..5 range."""

    pass


# Lookup errors
class JobNotFoundError(ServiceError):
    """Job does not exist (or was deleted with its property's data)."""

    pass
