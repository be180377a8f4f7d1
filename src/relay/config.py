"""Runtime settings assembled from command line arguments and the environment."""

from __future__ import annotations

import argparse
import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError

from relay.auth.models.registration import LOOPBACK_HOSTS, ClientCredentials
from relay.auth.storage import default_config_dir, server_url_hash
from relay.connection.manager import TransportStrategy

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

AUTH_TIMEOUT_ENV_VAR = "RELAY_AUTH_TIMEOUT"
DEFAULT_AUTH_TIMEOUT = 300.0


@dataclass
class RelaySettings:
    """Everything needed to connect to one remote server."""

    server_url: str
    callback_port: int = 0
    callback_host: str = "127.0.0.1"
    headers: dict[str, str] = field(default_factory=dict)
    transport: TransportStrategy = TransportStrategy.HTTP_FIRST
    static_client_info: ClientCredentials | None = None
    static_client_metadata: dict[str, Any] | None = None
    allow_http: bool = False
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT
    resource: str | None = None
    debug: bool = False
    config_dir: Path = field(default_factory=default_config_dir)

    def __post_init__(self) -> None:
        validate_server_url(self.server_url, self.allow_http)
        if not 0 <= self.callback_port <= 65535:
            raise ValueError(f"Invalid callback port: {self.callback_port}")
        if self.auth_timeout <= 0:
            raise ValueError("Auth timeout must be positive")

    @property
    def server_hash(self) -> str:
        return server_url_hash(self.server_url, self.resource)

    @property
    def debug_log_path(self) -> Path:
        return self.config_dir / f"{self.server_hash}_debug.log"

    @classmethod
    def from_args(
        cls, args: argparse.Namespace, environ: Mapping[str, str] | None = None
    ) -> RelaySettings:
        """Build settings from parsed arguments.

        Raises:
            ValueError: On any invalid value, with a readable message
        """
        environ = os.environ if environ is None else environ

        headers = dict(
            parse_header(raw, environ) for raw in (getattr(args, "header", None) or [])
        )

        static_client_info = None
        if args.static_oauth_client_info:
            data = load_json_argument(
                args.static_oauth_client_info, "--static-oauth-client-info"
            )
            try:
                static_client_info = ClientCredentials.model_validate(data)
            except ValidationError as e:
                raise ValueError(f"Invalid static OAuth client info: {e}") from e

        static_client_metadata = None
        if args.static_oauth_client_metadata:
            static_client_metadata = load_json_argument(
                args.static_oauth_client_metadata, "--static-oauth-client-metadata"
            )

        auth_timeout = args.auth_timeout
        if auth_timeout is None:
            raw_timeout = environ.get(AUTH_TIMEOUT_ENV_VAR, DEFAULT_AUTH_TIMEOUT)
            try:
                auth_timeout = float(raw_timeout)
            except ValueError as e:
                raise ValueError(
                    f"{AUTH_TIMEOUT_ENV_VAR} must be a number of seconds"
                ) from e

        return cls(
            server_url=args.server_url,
            callback_port=args.callback_port or 0,
            callback_host=args.host,
            headers=headers,
            transport=TransportStrategy(args.transport),
            static_client_info=static_client_info,
            static_client_metadata=static_client_metadata,
            allow_http=args.allow_http,
            auth_timeout=auth_timeout,
            resource=args.resource,
            debug=args.debug,
            config_dir=(
                Path(args.config_dir).expanduser()
                if args.config_dir
                else default_config_dir()
            ),
        )


def validate_server_url(url: str, allow_http: bool = False) -> None:
    """Require an absolute URL, HTTPS unless loopback or explicitly allowed.

    Raises:
        ValueError: If the URL is unusable
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Server URL must be an absolute http(s) URL: {url}")
    if (
        parsed.scheme == "http"
        and not allow_http
        and parsed.hostname not in LOOPBACK_HOSTS
    ):
        raise ValueError(
            "Non-HTTPS URLs are only allowed for localhost or when --allow-http is set"
        )


def parse_header(raw: str, environ: Mapping[str, str]) -> tuple[str, str]:
    """Parse ``Name: value`` and expand ``${VAR}`` references in the value.

    Raises:
        ValueError: If the header has no name
    """
    name, sep, value = raw.partition(":")
    name = name.strip()
    if not sep or not name:
        raise ValueError(f'Invalid header "{raw}", expected "Name: value"')

    def expand(match: re.Match) -> str:
        return environ.get(match.group(1), "")

    return name, _ENV_REFERENCE.sub(expand, value.strip())


def load_json_argument(value: str, option: str) -> dict[str, Any]:
    """Parse a JSON object given inline or as ``@path/to/file.json``.

    Raises:
        ValueError: If the file is unreadable or the JSON is not an object
    """
    if value.startswith("@"):
        path = Path(value[1:]).expanduser()
        try:
            value = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Cannot read {option} file {path}: {e}") from e

    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"{option} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"{option} must be a JSON object")
    return data
