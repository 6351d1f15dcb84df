import asyncio
import logging
import os
import random
from typing import Protocol

import httpx

from . import config
from .errors import (
    AccessDenied,
    DuplicateMovie,
    ListAPIError,
    NetworkError,
    NotFound,
    RateLimited,
    RequestTimeout,
    ServerError,
    SessionExpired,
    UnexpectedResponse,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

# TMDB status codes carried in error bodies.
TMDB_DUPLICATE_ENTRY = 8

_client: httpx.AsyncClient | None = None


class ListClient(Protocol):
    """Calls the queue and the list facade make against the remote list API.

    This module satisfies the protocol itself; tests pass their own object.
    """

    async def create_list(self, session_id: str, name: str, description: str = "", is_public: bool = False) -> dict: ...
    async def update_list(self, session_id: str, list_id: int, fields: dict) -> dict: ...
    async def delete_list(self, session_id: str, list_id: int) -> None: ...
    async def clear_list(self, session_id: str, list_id: int) -> None: ...
    async def add_movie(self, session_id: str, list_id: int, movie_id: int) -> None: ...
    async def remove_movie(self, session_id: str, list_id: int, movie_id: int) -> None: ...
    async def fetch_list(self, session_id: str, list_id: int) -> dict: ...
    async def fetch_list_movies(self, session_id: str, list_id: int) -> list[dict]: ...
    async def get_account_lists(self, session_id: str, account_id: int) -> list[dict]: ...


def _get_api_key() -> str:
    key = os.environ.get("TMDB_API_KEY", "")
    if not key:
        raise RuntimeError("TMDB_API_KEY environment variable not set.")
    return key


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(
            timeout=config.TMDB_TIMEOUT,
            headers={"Accept": "application/json", "User-Agent": "movielists/1.0"},
        )
    return _client


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


def _redacted(path: str, params: dict) -> str:
    shown = {k: ("***" if k in ("api_key", "session_id") else v) for k, v in params.items()}
    query = "&".join(f"{k}={v}" for k, v in shown.items())
    return f"{path}?{query}" if query else path


def _retry_delay(attempt: int, exc: ListAPIError) -> float:
    base = 5.0 if isinstance(exc, RateLimited) else 1.0
    return base * (2 ** (attempt - 1)) + random.uniform(0, 1)


def _body_of(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _classify_response(resp: httpx.Response) -> ListAPIError | None:
    status = resp.status_code
    body = _body_of(resp)
    message = str(body.get("status_message") or "")
    tmdb_code = body.get("status_code")

    if tmdb_code == TMDB_DUPLICATE_ENTRY:
        return DuplicateMovie(message or "The movie is already in the list", status=status)
    if status in (200, 201):
        if body.get("success") is False:
            return UnexpectedResponse(message or "Request was not successful", status=status)
        return None
    if status == 401:
        return SessionExpired(message or "Session expired", status=status)
    if status == 403:
        return AccessDenied(message or "Access denied", status=status)
    if status == 404:
        return NotFound(message or "Resource not found", status=status)
    if status == 422:
        return ValidationFailed(message or "Validation failed", status=status)
    if status == 429:
        return RateLimited(message or "Rate limit exceeded", status=status)
    if status >= 500:
        return ServerError(message or f"Server error {status}", status=status)
    return UnexpectedResponse(message or f"Unexpected status {status}", status=status)


async def _send(method: str, path: str, params: dict, body: dict | None) -> dict:
    client = await _get_client()
    try:
        resp = await client.request(method, f"{config.TMDB_BASE_URL}{path}", params=params, json=body)
    except httpx.TimeoutException as exc:
        raise RequestTimeout(f"Request timed out: {exc.__class__.__name__}") from exc
    except httpx.TransportError as exc:
        raise NetworkError(f"Transport error: {exc.__class__.__name__}") from exc
    error = _classify_response(resp)
    if error is not None:
        raise error
    return _body_of(resp)


async def _request(
    method: str,
    path: str,
    *,
    session_id: str | None = None,
    body: dict | None = None,
    params: dict | None = None,
    operation: str,
) -> dict:
    params = dict(params or {})
    params["api_key"] = _get_api_key()
    if session_id:
        params["session_id"] = session_id

    attempt = 1
    while True:
        logger.debug("TMDB %s %s (operation=%s, attempt=%s)", method, _redacted(path, params), operation, attempt)
        try:
            return await _send(method, path, params, body)
        except ListAPIError as exc:
            if not exc.transient or attempt >= config.TMDB_MAX_ATTEMPTS:
                logger.warning(
                    "TMDB %s failed (operation=%s, attempt=%s, reason=%s): %s",
                    _redacted(path, params), operation, attempt, exc.reason, exc.message,
                )
                raise
            delay = _retry_delay(attempt, exc)
            logger.info("Retrying %s after %.1fs (reason=%s, attempt=%s)", operation, delay, exc.reason, attempt)
            await asyncio.sleep(delay)
            attempt += 1


def _normalize_list(data: dict) -> dict:
    if not isinstance(data.get("id"), (int, str)) or not isinstance(data.get("name"), str):
        raise UnexpectedResponse("Invalid list response format")
    items = [item for item in (data.get("items") or []) if isinstance(item, dict)]
    return {
        **data,
        "id": int(data["id"]),
        "description": data.get("description") or "",
        "public": bool(data.get("public", False)),
        "item_count": int(data.get("item_count", len(items)) or 0),
        "items": items,
    }


async def create_list(session_id: str, name: str, description: str = "", is_public: bool = False) -> dict:
    data = await _request(
        "POST",
        "/list",
        session_id=session_id,
        body={"name": name, "description": description or "", "public": bool(is_public), "language": "en"},
        operation="create_list",
    )
    list_id = data.get("list_id")
    if not isinstance(list_id, int):
        raise UnexpectedResponse("Invalid create list response format")
    return {
        "id": list_id,
        "name": name,
        "description": description or "",
        "public": bool(is_public),
        "item_count": 0,
        "items": [],
    }


async def update_list(session_id: str, list_id: int, fields: dict) -> dict:
    body = {k: fields[k] for k in ("name", "description", "public") if fields.get(k) is not None}
    data = await _request("POST", f"/list/{list_id}", session_id=session_id, body=body, operation="update_list")
    return {"id": list_id, **body, "status_message": data.get("status_message")}


async def delete_list(session_id: str, list_id: int) -> None:
    await _request("DELETE", f"/list/{list_id}", session_id=session_id, operation="delete_list")


async def clear_list(session_id: str, list_id: int) -> None:
    await _request(
        "POST",
        f"/list/{list_id}/clear",
        session_id=session_id,
        params={"confirm": "true"},
        operation="clear_list",
    )


async def add_movie(session_id: str, list_id: int, movie_id: int) -> None:
    await _request(
        "POST",
        f"/list/{list_id}/add_item",
        session_id=session_id,
        body={"media_id": movie_id},
        operation="add_movie",
    )


async def remove_movie(session_id: str, list_id: int, movie_id: int) -> None:
    await _request(
        "POST",
        f"/list/{list_id}/remove_item",
        session_id=session_id,
        body={"media_id": movie_id},
        operation="remove_movie",
    )


async def fetch_list(session_id: str, list_id: int) -> dict:
    data = await _request("GET", f"/list/{list_id}", session_id=session_id, operation="fetch_list")
    return _normalize_list(data)


async def fetch_list_movies(session_id: str, list_id: int) -> list[dict]:
    return (await fetch_list(session_id, list_id))["items"]


async def get_account_lists(session_id: str, account_id: int) -> list[dict]:
    data = await _request(
        "GET",
        f"/account/{account_id}/lists",
        session_id=session_id,
        operation="get_account_lists",
    )
    results = data.get("results")
    if not isinstance(results, list):
        raise UnexpectedResponse("Invalid account lists response format")
    return [entry for entry in results if isinstance(entry, dict)]

