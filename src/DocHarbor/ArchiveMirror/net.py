"""Shared HTTPX client used for repository metadata and artifact downloads.

The client is created lazily on first use and reused for the lifetime of the
process.  Every request carries the configured ``User-Agent`` and a bounded
timeout so that one hanging upstream cannot stall a refresh cycle forever.
Tests install their own client (typically backed by ``httpx.MockTransport``)
through :func:`configure_http_client` or
:func:`DocHarbor.ArchiveMirror.testing.use_mock_http_client`.
"""

from __future__ import annotations

import logging
import ssl
import threading
import time
from typing import Callable, Optional

import certifi
import httpx

from .settings import HttpSettings

__all__ = [
    "get_http_client",
    "configure_http_client",
    "close_http_client",
    "reset_http_client",
    "http_settings",
]

LOGGER = logging.getLogger(__name__)

_CLIENT_LOCK = threading.RLock()
_HTTP_CLIENT: Optional[httpx.Client] = None
_CLIENT_FACTORY: Optional[Callable[[], httpx.Client]] = None
_SETTINGS = HttpSettings()
_INSTALLED = False
_STARTED_KEY = "docharbor.started"


def _trust_store() -> ssl.SSLContext:
    return ssl.create_default_context(cafile=certifi.where())


def _request_hook(request: httpx.Request) -> None:
    request.headers["User-Agent"] = _SETTINGS.user_agent
    request.extensions[_STARTED_KEY] = time.perf_counter()


def _response_hook(response: httpx.Response) -> None:
    started = response.request.extensions.get(_STARTED_KEY)
    elapsed = time.perf_counter() - started if isinstance(started, float) else None
    LOGGER.debug(
        "%s %s -> %s",
        response.request.method,
        response.request.url,
        response.status_code,
        extra={
            "stage": "http",
            "url": str(response.request.url),
            "status": response.status_code,
            "elapsed_sec": elapsed,
        },
    )


def _timeout_for(settings: HttpSettings) -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.timeout_connect,
        read=settings.timeout_read,
        write=settings.timeout_write,
        pool=settings.timeout_pool,
    )


def _limits_for(settings: HttpSettings) -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.pool_max_connections,
        max_keepalive_connections=settings.pool_keepalive_max,
    )


def _build_http_client(settings: HttpSettings) -> httpx.Client:
    return httpx.Client(
        http2=settings.http2,
        timeout=_timeout_for(settings),
        limits=_limits_for(settings),
        verify=_trust_store(),
        trust_env=settings.trust_env,
        follow_redirects=True,
        event_hooks={"request": [_request_hook], "response": [_response_hook]},
    )


def _install_hooks(client: httpx.Client) -> httpx.Client:
    hooks = client.event_hooks
    request_hooks = list(hooks.get("request", []))
    response_hooks = list(hooks.get("response", []))
    if _request_hook not in request_hooks:
        request_hooks.insert(0, _request_hook)
    if _response_hook not in response_hooks:
        response_hooks.append(_response_hook)
    client.event_hooks = {"request": request_hooks, "response": response_hooks}
    return client


def _discard_client() -> None:
    global _HTTP_CLIENT, _INSTALLED
    if _HTTP_CLIENT is not None:
        try:
            _HTTP_CLIENT.close()
        except Exception:  # pragma: no cover - closing a broken pool
            LOGGER.exception("error closing HTTP client")
    _HTTP_CLIENT = None
    _INSTALLED = False


def http_settings() -> HttpSettings:
    """Return the HTTP settings the shared client is bound to."""

    return _SETTINGS


def configure_http_client(
    client: Optional[httpx.Client] = None,
    *,
    factory: Optional[Callable[[], httpx.Client]] = None,
    settings: Optional[HttpSettings] = None,
) -> None:
    """Install a client, a client factory, or new settings for the shared client.

    Installing a client or factory replaces (and closes) the current client.
    Passing only ``settings`` rebuilds a client this module created itself on
    next use but keeps an installed client in place.
    """

    if client is not None and factory is not None:
        raise ValueError("provide either a client or factory, not both")

    global _HTTP_CLIENT, _CLIENT_FACTORY, _SETTINGS, _INSTALLED
    with _CLIENT_LOCK:
        if settings is not None:
            _SETTINGS = settings
        if client is None and factory is None:
            if not _INSTALLED:
                _discard_client()
            return
        if _HTTP_CLIENT is not client:
            _discard_client()
        _CLIENT_FACTORY = factory
        _HTTP_CLIENT = _install_hooks(client) if client is not None else None
        _INSTALLED = True


def get_http_client() -> httpx.Client:
    """Return the shared HTTPX client, creating it on first use."""

    global _HTTP_CLIENT
    with _CLIENT_LOCK:
        if _HTTP_CLIENT is None:
            if _CLIENT_FACTORY is not None:
                _HTTP_CLIENT = _install_hooks(_CLIENT_FACTORY())
            else:
                _HTTP_CLIENT = _build_http_client(_SETTINGS)
            LOGGER.debug(
                "HTTP client initialized",
                extra={"stage": "http", "user_agent": _SETTINGS.user_agent},
            )
        return _HTTP_CLIENT


def close_http_client() -> None:
    """Close the shared client; a later :func:`get_http_client` builds a new one."""

    with _CLIENT_LOCK:
        _discard_client()


def reset_http_client() -> None:
    """Close the shared client and restore default settings (test isolation)."""

    global _CLIENT_FACTORY, _SETTINGS
    with _CLIENT_LOCK:
        _discard_client()
        _CLIENT_FACTORY = None
        _SETTINGS = HttpSettings()
