"""Replicate API client shared by the classifier, generator and QC evaluator adapters."""

import asyncio
import json
from typing import Any

import replicate
from replicate.exceptions import ReplicateError as ReplicateAPIError

from gss.services.exceptions import (
    ConfigurationError,
    PermanentError,
    ServiceError,
    TransientError,
)


def classify_error(
    exception: Exception,
    transient: type[TransientError] = TransientError,
    permanent: type[PermanentError] = PermanentError,
) -> ServiceError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer
        transient: TransientError subclass raised for retryable failures
        permanent: PermanentError subclass raised for everything else

    Returns:
        Classified error instance

    Classification rules:
        - Timeout errors → transient
        - 429 (rate limit) → transient
        - 502/503 (service unavailable) → transient
        - 401/403 (authentication) → permanent
        - Content policy violations → permanent
        - Connection errors → transient
        - Other errors → permanent
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    # Check for timeout errors
    if "timeout" in error_message_lower or "timed out" in error_message_lower:
        return transient(f"Network timeout: {error_message}")

    # Check for rate limiting
    if "429" in error_message or "rate limit" in error_message_lower:
        return transient(f"Rate limit exceeded: {error_message}")

    # Check for service unavailability
    if (
        "502" in error_message
        or "503" in error_message
        or "service unavailable" in error_message_lower
        or "bad gateway" in error_message_lower
    ):
        return transient(f"Service unavailable: {error_message}")

    # Check for authentication issues
    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return permanent(f"Authentication failed: {error_message}")

    # Check for content policy violations
    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
        or "inappropriate" in error_message_lower
    ):
        return permanent(f"Content policy violation: {error_message}")

    # Check for connection errors (network layer)
    if isinstance(exception, (ConnectionError, TimeoutError, OSError)):
        return transient(f"Connection error: {error_message}")

    # Default: treat as permanent error
    return permanent(f"Permanent error: {error_message}")


async def run_model(
    model: str,
    model_input: dict[str, Any],
    api_token: str,
    transient: type[TransientError] = TransientError,
    permanent: type[PermanentError] = PermanentError,
) -> Any:
    """Run a Replicate model.

    The SDK is synchronous, so the call runs in a worker thread.

    Args:
        model: Model identifier ("owner/name" or "owner/name:version")
        model_input: Model input payload
        api_token: Replicate API authentication token
        transient: Error class raised for retryable failures
        permanent: Error class raised for non-retryable failures

    Returns:
        Raw model output (format varies by model)

    Raises:
        ConfigurationError: API token not configured
        TransientError: Temporary failure (subclass given by `transient`)
        PermanentError: Permanent failure (subclass given by `permanent`)
    """
    if not api_token:
        raise ConfigurationError("REPLICATE_API_TOKEN not configured")

    client = replicate.Client(api_token=api_token)

    try:
        return await asyncio.to_thread(client.run, model, input=model_input)

    except ReplicateAPIError as e:
        # Classify and re-raise with appropriate error type
        raise classify_error(e, transient, permanent) from e

    except (ConnectionError, OSError, TimeoutError) as e:
        # Network-level errors
        raise classify_error(e, transient, permanent) from e

    except Exception as e:
        # Unexpected errors - treat as permanent to avoid infinite retries
        raise permanent(f"Unexpected error: {e}") from e


def output_text(output: Any) -> str:
    """Join streamed text output (language/vision models yield string chunks)."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return "".join(str(part) for part in output)


def output_url(output: Any) -> str | None:
    """Extract the first file URL from image model output."""
    if isinstance(output, (list, tuple)):
        if not output:
            return None
        output = output[0]
    if output is None:
        return None
    # FileOutput objects (SDK >= 1.0) carry the URL on .url
    return str(getattr(output, "url", output))


def extract_json(text: str) -> dict[str, Any]:
    """Parse the first JSON object embedded in a model answer.

    Raises:
        ValueError: If no JSON object can be parsed
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object in model output")

    payload = json.loads(text[start : end + 1])
    if not isinstance(payload, dict):
        raise ValueError("Model output is not a JSON object")
    return payload
