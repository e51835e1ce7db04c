"""
HTTP helpers.

This module centralizes the minimal HTTP client logic used by HTTP-backed store adapters.

Design goals:
- Small surface area (GET/POST/PATCH/DELETE JSON).
- Deterministic defaults (timeout + User-Agent).
- Raise on non-2xx so callers can decide how to fail.
"""

from __future__ import annotations

from typing import Any

import httpx


DEFAULT_USER_AGENT = "georange/0.1.0"


def _headers(headers: dict[str, str] | None) -> dict[str, str]:
    request_headers = {"User-Agent": DEFAULT_USER_AGENT}
    if headers:
        request_headers.update(headers)
    return request_headers


def _decode(resp: httpx.Response) -> Any:
    resp.raise_for_status()
    if not resp.content:
        return None
    return resp.json()


def get_json(
    url: str,
    *,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15,
) -> Any:
    """GET `url` and return the decoded JSON response.

    Raises:
        httpx.HTTPError: On transport errors or non-2xx status codes.
        ValueError: If the response body is not valid JSON.
    """
    with httpx.Client(timeout=timeout_seconds) as client:
        return _decode(client.get(url, params=params, headers=_headers(headers)))


def post_json(
    url: str,
    *,
    payload: Any,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15,
) -> Any:
    """POST `payload` as a JSON body and return the decoded JSON response."""
    with httpx.Client(timeout=timeout_seconds) as client:
        return _decode(client.post(url, json=payload, params=params, headers=_headers(headers)))


def patch_json(
    url: str,
    *,
    payload: Any,
    params: dict[str, Any] | list[tuple[str, Any]] | None = None,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15,
) -> Any:
    """PATCH `payload` as a JSON body; `params` may repeat keys (e.g. update masks)."""
    with httpx.Client(timeout=timeout_seconds) as client:
        return _decode(client.patch(url, json=payload, params=params, headers=_headers(headers)))


def delete(
    url: str,
    *,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15,
) -> None:
    with httpx.Client(timeout=timeout_seconds) as client:
        client.delete(url, headers=_headers(headers)).raise_for_status()
