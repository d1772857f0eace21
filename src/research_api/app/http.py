"""Minimal JSON-over-HTTP client shared by the model engine and web tools."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any
from urllib import error, request

logger = logging.getLogger(__name__)

# (url, payload, headers, timeout_s) -> decoded JSON body
JsonTransport = Callable[[str, dict[str, Any], Mapping[str, str], float], dict[str, Any]]


def post_json(
    url: str,
    payload: dict[str, Any],
    headers: Mapping[str, str],
    timeout_s: float,
) -> dict[str, Any]:
    req = request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json", **headers},
    )
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            body = response.read().decode("utf-8")
    except error.HTTPError as exc:
        raw_error = exc.read().decode("utf-8", errors="replace")
        raise error.HTTPError(
            exc.url,
            exc.code,
            f"Request to {url} failed: {raw_error}",
            exc.headers,
            exc.fp,
        ) from exc
    decoded = json.loads(body)
    if not isinstance(decoded, dict):
        raise ValueError(f"Expected a JSON object from {url}")
    return decoded


def post_json_with_retry(
    transport: JsonTransport,
    url: str,
    payload: dict[str, Any],
    headers: Mapping[str, str],
    *,
    timeout_s: float,
    max_retries: int,
    backoff_s: float,
    label: str,
) -> dict[str, Any]:
    last_error: Exception | None = None
    for attempt in range(max_retries + 1):
        try:
            return transport(url, payload, headers, timeout_s)
        except (TimeoutError, ValueError, error.URLError) as exc:
            last_error = exc
            logger.warning(
                "http_request event=failed label=%s attempt=%d/%d reason=%s",
                label,
                attempt + 1,
                max_retries + 1,
                exc,
            )
            if attempt < max_retries and backoff_s > 0:
                time.sleep(backoff_s)
    if last_error is None:
        raise RuntimeError(f"{label} request failed with unknown error")
    raise last_error
