"""Request/response hook pipeline for outbound HTTP calls.

Every HTTP call relay makes (discovery, registration, token endpoint and the
remote transports) goes through an ``httpx.AsyncClient`` built by
``HttpPipeline.build_client``. The client's transport is wrapped in a
``HookedTransport`` which runs, in registration order:

1. request hooks, each of which may rewrite the URL,
2. the actual network call,
3. response transform hooks, each of which may replace the response,
4. response hooks, which only observe.

A failing hook is logged and skipped. With no hooks registered the wrapper
is a pass-through.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
_REDACTED_REQUEST_HEADERS = frozenset({"authorization"})
_REDACTED_RESPONSE_HEADERS = frozenset({"authorization", "set-cookie"})

_OAUTH_MARKERS = (
    "/.well-known/oauth-",
    "/.well-known/openid-configuration",
    "/authorize",
    "/token",
    "/register",
    "oauth2/v1/clients",
    "scope=",
)


def is_oauth_related(url: str) -> bool:
    """True for discovery, authorization, token and registration URLs."""
    return any(marker in url for marker in _OAUTH_MARKERS)


def redact_headers(
    headers: Mapping[str, str] | httpx.Headers | None,
    sensitive: frozenset[str] = _REDACTED_REQUEST_HEADERS,
) -> dict[str, str]:
    """Copy headers into a plain dict with credential-bearing values hidden."""
    if not headers:
        return {}
    return {
        key: REDACTED if key.lower() in sensitive else value
        for key, value in headers.items()
    }


@dataclass(frozen=True)
class RequestContext:
    """What a request hook sees about an outbound call."""

    url: str
    method: str
    headers: dict[str, str]
    original_server_url: str | None
    is_oauth_related: bool


@dataclass(frozen=True)
class ResponseContext:
    """What response hooks see after the call completed."""

    request: RequestContext
    url: str
    response: httpx.Response
    status: int
    reason_phrase: str
    response_headers: dict[str, str]
    duration_ms: float

    @property
    def method(self) -> str:
        return self.request.method

    @property
    def is_oauth_related(self) -> bool:
        return self.request.is_oauth_related


RequestHook = Callable[[RequestContext], str | None]
ResponseHook = Callable[[ResponseContext], None]
ResponseTransformHook = Callable[[ResponseContext], httpx.Response | None]


@dataclass
class HttpPipeline:
    """Ordered hook registries bound to one remote server.

    Constructed once per process and handed to every component that makes
    HTTP calls, so hook order and lifetime are explicit.
    """

    original_server_url: str | None = None
    request_hooks: list[RequestHook] = field(default_factory=list)
    response_hooks: list[ResponseHook] = field(default_factory=list)
    response_transform_hooks: list[ResponseTransformHook] = field(
        default_factory=list
    )

    def register_request_hook(self, hook: RequestHook) -> None:
        self.request_hooks.append(hook)
        logger.debug(f"Registered request hook ({len(self.request_hooks)} total)")

    def register_response_hook(self, hook: ResponseHook) -> None:
        self.response_hooks.append(hook)
        logger.debug(f"Registered response hook ({len(self.response_hooks)} total)")

    def register_response_transform_hook(self, hook: ResponseTransformHook) -> None:
        self.response_transform_hooks.append(hook)
        logger.debug(
            "Registered response transform hook "
            f"({len(self.response_transform_hooks)} total)"
        )

    def clear(self) -> None:
        self.request_hooks.clear()
        self.response_hooks.clear()
        self.response_transform_hooks.clear()

    # ================================
    # Hook application
    # ================================

    def apply_request_hooks(self, context: RequestContext) -> str:
        """Run request hooks in order and return the final URL."""
        current_url = context.url

        for hook in self.request_hooks:
            try:
                modified_url = hook(replace(context, url=current_url))
            except Exception as e:
                logger.debug(f"Error in request hook {_hook_name(hook)}: {e}")
                continue

            if modified_url and modified_url != current_url:
                logger.debug(f"URL modified: {current_url} -> {modified_url}")
                current_url = modified_url

        return current_url

    def apply_response_transform_hooks(
        self, context: ResponseContext
    ) -> ResponseContext:
        """Run transform hooks in order; each may substitute the response."""
        current = context

        for hook in self.response_transform_hooks:
            try:
                replacement = hook(current)
            except Exception as e:
                logger.debug(
                    f"Error in response transform hook {_hook_name(hook)}: {e}"
                )
                continue

            if replacement is not None and replacement is not current.response:
                logger.debug(
                    f"Response transformed: status {current.status} -> "
                    f"{replacement.status_code}"
                )
                current = replace(
                    current,
                    response=replacement,
                    status=replacement.status_code,
                    reason_phrase=replacement.reason_phrase,
                    response_headers=redact_headers(
                        replacement.headers, _REDACTED_RESPONSE_HEADERS
                    ),
                )

        return current

    def apply_response_hooks(self, context: ResponseContext) -> None:
        for hook in self.response_hooks:
            try:
                hook(context)
            except Exception as e:
                logger.debug(f"Error in response hook {_hook_name(hook)}: {e}")

    # ================================
    # Client construction
    # ================================

    def wrap(
        self, transport: httpx.AsyncBaseTransport | None = None
    ) -> HookedTransport:
        return HookedTransport(self, transport)

    def build_client(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        **client_kwargs: Any,
    ) -> httpx.AsyncClient:
        """Create an httpx client whose every request runs through this pipeline.

        Args:
            transport: Inner transport doing the network I/O (tests pass an
                ``httpx.MockTransport``)
            **client_kwargs: Passed through to ``httpx.AsyncClient``
        """
        return httpx.AsyncClient(transport=self.wrap(transport), **client_kwargs)


class HookedTransport(httpx.AsyncBaseTransport):
    """httpx transport that applies an ``HttpPipeline`` around another transport."""

    def __init__(
        self,
        pipeline: HttpPipeline,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        original_url = str(request.url)
        request_context = RequestContext(
            url=original_url,
            method=request.method,
            headers=redact_headers(request.headers),
            original_server_url=self._pipeline.original_server_url,
            is_oauth_related=is_oauth_related(original_url),
        )

        final_url = self._pipeline.apply_request_hooks(request_context)
        if final_url != original_url:
            request.url = httpx.URL(final_url)
            request.headers["Host"] = request.url.netloc.decode("ascii")

        started = time.monotonic()
        try:
            response = await self._transport.handle_async_request(request)
        except Exception as e:
            logger.warning(f"HTTP error: {request.method} {final_url}: {e}")
            raise
        duration_ms = (time.monotonic() - started) * 1000

        if not (
            self._pipeline.response_transform_hooks or self._pipeline.response_hooks
        ):
            return response

        response_context = ResponseContext(
            request=request_context,
            url=final_url,
            response=response,
            status=response.status_code,
            reason_phrase=response.reason_phrase,
            response_headers=redact_headers(
                response.headers, _REDACTED_RESPONSE_HEADERS
            ),
            duration_ms=duration_ms,
        )

        final_context = self._pipeline.apply_response_transform_hooks(response_context)
        self._pipeline.apply_response_hooks(final_context)

        return final_context.response

    async def aclose(self) -> None:
        await self._transport.aclose()


def _hook_name(hook: Callable[..., Any]) -> str:
    return getattr(hook, "__name__", repr(hook))
