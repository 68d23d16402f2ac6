"""JSON-over-HTTP calls to model servers, with bounded retry.

Retries 429, 5xx, connection errors and timeouts with exponential backoff and
full jitter. Everything else fails on the first attempt. Failures surface as
TransientDependencyError so circuit breakers can count them.
"""

import asyncio
import random
from typing import Any

import httpx

from ..errors import ProviderResponseError, TransientDependencyError
from ..logging_config import get_logger

logger = get_logger(__name__)

_MAX_BACKOFF = 2.0  # seconds; model servers sit on the query path


def _is_retryable_status(status_code: int) -> bool:
    """Check if an HTTP status code warrants a retry."""
    return status_code == 429 or status_code >= 500


def _backoff_delay(attempt: int, base: float, max_delay: float = _MAX_BACKOFF) -> float:
    """Full-jitter backoff: random(0, min(max_delay, base * 2^attempt))."""
    exp_delay = min(max_delay, base * (2**attempt))
    return random.uniform(0, exp_delay)


def join_url(endpoint: str, path: str) -> str:
    return f"{endpoint.rstrip('/')}/{path.lstrip('/')}"


async def post_json_with_retry(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    max_retries: int = 3,
    base_backoff: float = 0.1,
    api_name: str = "provider",
) -> Any:
    """POST ``payload`` and return the decoded JSON body.

    Args:
        client: Shared client; its timeout bounds each attempt
        url: Request URL
        payload: JSON body
        headers: Extra request headers
        max_retries: Total number of attempts (including the first request)
        base_backoff: Base backoff delay in seconds
        api_name: Name for logging and error attribution

    Raises:
        TransientDependencyError: All attempts failed or the status is not retryable
        ProviderResponseError: The body is not valid JSON
    """
    last_error = "no attempts made"

    for attempt in range(max_retries):
        is_last = attempt == max_retries - 1
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            last_error = "request timed out"
        except httpx.TransportError as e:
            last_error = f"connection error: {type(e).__name__}"
        else:
            if response.status_code < 400:
                try:
                    return response.json()
                except ValueError as e:
                    raise ProviderResponseError(
                        f"{api_name} returned invalid JSON", dependency=api_name
                    ) from e
            if not _is_retryable_status(response.status_code):
                logger.error(
                    "%s request failed with status %d (not retryable): %s",
                    api_name,
                    response.status_code,
                    url,
                )
                raise TransientDependencyError(
                    f"{api_name} rejected request with status {response.status_code}",
                    dependency=api_name,
                )
            last_error = f"status {response.status_code}"

        if is_last:
            break
        delay = _backoff_delay(attempt, base=base_backoff)
        logger.warning(
            "%s %s, retrying in %.2fs (attempt %d/%d)",
            api_name,
            last_error,
            delay,
            attempt + 1,
            max_retries,
        )
        await asyncio.sleep(delay)

    logger.error("%s request failed after %d attempts: %s", api_name, max_retries, url)
    raise TransientDependencyError(
        f"{api_name} request failed after {max_retries} attempts ({last_error})",
        dependency=api_name,
    )


async def get_status(client: httpx.AsyncClient, url: str) -> int:
    """GET ``url`` once and return the status code."""
    response = await client.get(url)
    return response.status_code
