"""Built-in hooks for the HTTP pipeline.

- ``OAuthUrlFixer``: best-effort rewrites for OAuth gateways that publish
  malformed discovery or registration URLs. Rules are plain callables so
  operators can add their own or drop ours.
- ``response_logger``: debug trace of every call.
- ``transform_405_to_404``: maps 405 on OAuth discovery URLs to 404 so
  metadata fallbacks treat "method not allowed" as "not there".

Set ``RELAY_NOFIX`` to any non-empty value to disable the URL fixer for
servers that already publish correct URLs.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

import httpx

from relay.http.pipeline import HttpPipeline, RequestContext, ResponseContext

logger = logging.getLogger(__name__)

NOFIX_ENV_VAR = "RELAY_NOFIX"

AS_WELL_KNOWN = "/.well-known/oauth-authorization-server"

_DOUBLE_WELL_KNOWN = re.compile(
    r"^(https?://[^/]+)/\.well-known/oauth-authorization-server/(.+)"
    r"/\.well-known/oauth-authorization-server$"
)
_NESTED_AUTH_SERVER = re.compile(
    r"^(https?://[^/]+)/\.well-known/oauth-authorization-server/(.+)$"
)
_WELL_KNOWN_PATH = re.compile(r"/(\.well-known/[^?#]*)")


def url_fixing_disabled() -> bool:
    return bool(os.environ.get(NOFIX_ENV_VAR))


@dataclass(frozen=True)
class UrlPair:
    """The URL being requested and the server URL relay was started with."""

    url: str
    server_url: str

    @property
    def request_origin(self) -> str:
        return _origin(self.url)

    @property
    def server_origin(self) -> str:
        return _origin(self.server_url)

    @property
    def same_origin(self) -> bool:
        return self.request_origin == self.server_origin


UrlRule = Callable[[UrlPair], str | None]


def fix_double_well_known(pair: UrlPair) -> str | None:
    """``/.well-known/oauth-authorization-server/<p>/.well-known/oauth-authorization-server``
    becomes ``/<p>/.well-known/oauth-authorization-server``."""
    match = _DOUBLE_WELL_KNOWN.match(pair.url)
    if not match:
        return None
    domain, server_path = match.groups()
    return f"{domain}/{server_path}{AS_WELL_KNOWN}"


def fix_same_origin_well_known(pair: UrlPair) -> str | None:
    """Re-root same-origin discovery URLs at the gateway path of the server."""
    if not pair.same_origin:
        return None
    if "/.well-known/oauth-" not in pair.url and (
        "/.well-known/openid-configuration" not in pair.url
    ):
        return None

    match = _WELL_KNOWN_PATH.search(pair.url)
    if not match:
        return None
    well_known_path = match.group(1)

    server_path = urlparse(pair.server_url).path.rstrip("/")
    last_slash = server_path.rfind("/")
    gateway_path = server_path[:last_slash] if last_slash > 0 else ""

    query = urlparse(pair.url).query
    fixed = f"{pair.server_origin}{gateway_path}/{well_known_path}"
    if query:
        fixed += f"?{query}"
    return fixed


def fix_cross_origin_auth_server(pair: UrlPair) -> str | None:
    """``/.well-known/oauth-authorization-server/<gateway>/<tenant>`` becomes
    ``/<gateway>/.well-known/oauth-authorization-server``."""
    if pair.url.endswith(AS_WELL_KNOWN):
        return None
    match = _NESTED_AUTH_SERVER.match(pair.url)
    if not match:
        return None

    domain, auth_server_path = match.groups()
    last_slash = auth_server_path.rfind("/")
    if last_slash > 0:
        gateway_path = auth_server_path[:last_slash]
    else:
        gateway_path = auth_server_path.split("/")[0]

    if gateway_path:
        return f"{domain}/{gateway_path}{AS_WELL_KNOWN}"
    return f"{domain}{AS_WELL_KNOWN}"


def fix_same_origin_registration(pair: UrlPair) -> str | None:
    """Same-origin ``/register`` is moved under the server's own path."""
    if not pair.same_origin or not urlparse(pair.url).path.endswith("/register"):
        return None
    server_path = urlparse(pair.server_url).path.rstrip("/")
    return f"{pair.server_origin}{server_path}/register"


DEFAULT_URL_RULES: tuple[UrlRule, ...] = (
    fix_double_well_known,
    fix_same_origin_well_known,
    fix_cross_origin_auth_server,
    fix_same_origin_registration,
)


class OAuthUrlFixer:
    """Request hook applying the first URL rule that changes the URL.

    Args:
        rules: Ordered rules; each returns a replacement URL or None
    """

    def __init__(self, rules: Sequence[UrlRule] = DEFAULT_URL_RULES) -> None:
        self.rules = list(rules)
        self.__name__ = type(self).__name__

    def __call__(self, context: RequestContext) -> str | None:
        if not context.original_server_url or url_fixing_disabled():
            return None

        pair = UrlPair(url=context.url, server_url=context.original_server_url)
        for rule in self.rules:
            try:
                fixed = rule(pair)
            except ValueError as e:
                logger.debug(f"OAuth URL fix rule {rule.__name__} failed: {e}")
                continue

            if fixed and fixed != context.url:
                logger.debug(
                    f"Fixed OAuth URL ({rule.__name__}): {context.url} -> {fixed}"
                )
                return fixed

        return None


def response_logger(context: ResponseContext) -> None:
    """Debug trace of one HTTP exchange, with OAuth query parameters called out."""
    if not logger.isEnabledFor(logging.DEBUG):
        return

    logger.debug(f"HTTP {context.method} {context.url}")
    logger.debug(f"Response status: {context.status} {context.reason_phrase}")
    logger.debug(f"Response time: {context.duration_ms:.0f}ms")
    if context.response_headers:
        logger.debug(f"Response headers: {context.response_headers}")

    if not context.is_oauth_related:
        return

    parsed_query = parse_qs(urlparse(context.url).query)
    query = {key: values[0] for key, values in parsed_query.items()}
    if "scope" in query:
        logger.debug(f"OAuth scopes requested: {query['scope']}")

    oauth_params = {
        key: query[key]
        for key in ("response_type", "client_id", "redirect_uri")
        if key in query
    }
    if oauth_params:
        logger.debug(f"OAuth params: {oauth_params}")


def transform_405_to_404(context: ResponseContext) -> httpx.Response | None:
    """Report 405 from OAuth discovery endpoints as 404."""
    if context.status != 405 or not context.is_oauth_related:
        return None

    original = context.response
    return httpx.Response(
        404,
        headers=original.headers,
        stream=original.stream,
        extensions={**original.extensions, "reason_phrase": b"Not Found"},
    )


def install_default_hooks(pipeline: HttpPipeline, debug: bool = False) -> HttpPipeline:
    """Register the built-in hooks on a pipeline.

    The URL fixer is skipped entirely when ``RELAY_NOFIX`` is set; the
    response logger only when debugging.
    """
    if url_fixing_disabled():
        logger.debug(f"{NOFIX_ENV_VAR} set, OAuth URL fixing disabled")
    else:
        pipeline.register_request_hook(OAuthUrlFixer())

    pipeline.register_response_transform_hook(transform_405_to_404)

    if debug:
        pipeline.register_response_hook(response_logger)

    return pipeline


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
