"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
HTTP transport used by the extractor and loader.

The engine only depends on the ``HttpClient`` protocol. ``RequestsHttpClient``
is the default implementation: it runs blocking ``requests`` calls on a small
thread pool so the event loop keeps scheduling other work, and converts every
failure into a typed ``ETLError``.
"""

import asyncio
import functools
import json
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import requests
from requests.exceptions import ConnectionError, HTTPError, RequestException, Timeout

from tmbridge.core.logging import get_logger
from tmbridge.errors import (
    AuthenticationError,
    ETLError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ValidationError,
)

logger = get_logger("tmbridge.http_client")

SENSITIVE_FIELDS = ("token", "password", "secret", "key", "auth", "credential")


@dataclass
class HttpResponse:
    """A successful response."""

    status_code: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)


class HttpClient(Protocol):
    """Transport capability consumed by the migration engine."""

    async def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> HttpResponse: ...

    async def post(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        body: Any = None,
        files: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> HttpResponse: ...


def mask_sensitive_data(data: Any) -> Any:
    """Copy of ``data`` with sensitive-looking fields masked, for logging."""
    if isinstance(data, dict):
        masked = {}
        for key, value in data.items():
            if any(s in str(key).lower() for s in SENSITIVE_FIELDS):
                masked[key] = "********"
            else:
                masked[key] = mask_sensitive_data(value)
        return masked
    if isinstance(data, list):
        return [mask_sensitive_data(v) for v in data]
    return data


def error_for_status(
    status_code: int,
    message: str,
    context: dict[str, Any],
    retry_after: float | None = None,
) -> ETLError:
    """
    Typed error for a non-2xx status.

    401/403, 404 and 422 are final; 429 and everything else may be retried.
    """
    context = {**context, "status_code": status_code}
    if status_code in (401, 403):
        return AuthenticationError(message, context)
    if status_code == 404:
        return NetworkError(message, context, is_retryable=False)
    if status_code == 422:
        return ValidationError(message, context)
    if status_code == 429:
        return RateLimitError(message, context, retry_after=retry_after)
    return NetworkError(message, context)


def _parse_body(response: requests.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _retry_after(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class RequestsHttpClient:
    """
    ``HttpClient`` backed by a ``requests.Session``.

    Args:
        timeout: Per-request timeout in seconds
        session: Session to use, a new one by default
        max_workers: Size of the thread pool running blocking calls
    """

    def __init__(
        self,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        max_workers: int = 10,
    ):
        self.timeout = timeout
        self.session = session or requests.Session()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tmbridge-http")

    async def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> HttpResponse:
        return await self._run("GET", url, headers=headers, params=params)

    async def post(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        body: Any = None,
        files: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> HttpResponse:
        return await self._run("POST", url, headers=headers, params=params, body=body, files=files)

    async def _run(self, method: str, url: str, **kwargs: Any) -> HttpResponse:
        loop = asyncio.get_running_loop()
        call = functools.partial(self.request, method, url, **kwargs)
        return await loop.run_in_executor(self._pool, call)

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        body: Any = None,
        files: dict[str, str] | None = None,
    ) -> HttpResponse:
        """
        Perform one blocking request.

        Args:
            method: HTTP method
            url: Absolute URL
            headers: Request headers
            params: Query parameters
            body: JSON body, or form fields when ``files`` is given
            files: Form field name to local file path, sent as multipart

        Returns:
            The parsed response

        Raises:
            ETLError: A typed error for any failure
        """
        request_id = f"{method}_{int(time.time() * 1000)}"
        context = {"method": method, "url": url, "request_id": request_id}
        headers = dict(headers or {})

        safe_headers = {k: v for k, v in headers.items() if k.lower() != "authorization"}
        logger.debug(f"API Request [{request_id}]: {method} {url}")
        logger.debug(f"Headers [{request_id}]: {safe_headers}")
        if body is not None:
            logger.debug(
                f"Request Body [{request_id}]: {json.dumps(mask_sensitive_data(body), default=str)}"
            )

        start_time = time.time()
        try:
            with ExitStack() as stack:
                kwargs: dict[str, Any] = {
                    "headers": headers,
                    "params": params,
                    "timeout": self.timeout,
                }
                if files:
                    kwargs["files"] = {
                        name: (Path(path).name, stack.enter_context(open(path, "rb")))
                        for name, path in files.items()
                    }
                    kwargs["data"] = body or {}
                elif body is not None:
                    kwargs["json"] = body

                response = self.session.request(method, url, **kwargs)

            duration = time.time() - start_time
            logger.debug(
                f"Response [{request_id}] received in {duration:.2f}s - Status: {response.status_code}"
            )
            response.raise_for_status()
            return HttpResponse(response.status_code, _parse_body(response), dict(response.headers))

        except HTTPError as e:
            response = e.response
            status_code = response.status_code if response is not None else 0
            details = _parse_body(response) if response is not None else None
            logger.error(f"HTTP Error [{request_id}]: {status_code} for {method} {url}")
            if details:
                logger.debug(f"API Error Details [{request_id}]: {details}")
            raise error_for_status(
                status_code,
                f"{method} {url} failed with status {status_code}",
                {**context, "response": details},
                retry_after=_retry_after(response) if response is not None else None,
            ) from e

        except Timeout as e:
            logger.error(f"Timeout Error [{request_id}]: {url} timed out after {self.timeout}s")
            raise RequestTimeoutError(
                f"{method} {url} timed out after {self.timeout}s", context
            ) from e

        except ConnectionError as e:
            logger.error(f"Connection Error [{request_id}]: Could not connect to {url}: {e}")
            raise NetworkError(f"Could not connect to {url}", context) from e

        except RequestException as e:
            logger.error(f"Request Error [{request_id}]: {e}")
            raise NetworkError(f"{method} {url} failed: {e}", context) from e

        except OSError as e:
            logger.error(f"File Error [{request_id}]: {e}")
            raise ValidationError(f"Could not read upload for {url}: {e}", context) from e

    def close(self) -> None:
        self.session.close()
        self._pool.shutdown(wait=False)
