"""File-backed credential store keyed by a hash of the server URL.

One JSON file per concern and server:

    <config_dir>/<hash>_client_info.json
    <config_dir>/<hash>_tokens.json
    <config_dir>/<hash>_code_verifier.txt

Writes go to a temporary file in the same directory followed by
``os.replace`` so a concurrent reader in another process sees either the old
or the new record, never a partial one. Last writer wins.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import ValidationError

from relay.auth.models.registration import ClientCredentials
from relay.auth.models.tokens import TokenSet

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV_VAR = "RELAY_CONFIG_DIR"
DEFAULT_CONFIG_DIR = Path.home() / ".mcp-auth" / "relay"

ClearScope = Literal["all", "client", "tokens", "verifier"]

_CLIENT_INFO = "client_info.json"
_TOKENS = "tokens.json"
_CODE_VERIFIER = "code_verifier.txt"


def server_url_hash(server_url: str, resource: str | None = None) -> str:
    """Stable storage key for a server URL (and optional resource override)."""
    key = server_url if not resource else f"{server_url}|{resource}"
    return hashlib.md5(key.encode("utf-8")).hexdigest()


def default_config_dir() -> Path:
    configured = os.environ.get(CONFIG_DIR_ENV_VAR)
    return Path(configured).expanduser() if configured else DEFAULT_CONFIG_DIR


@dataclass(frozen=True)
class StoredCredentials:
    """Everything persisted for one server."""

    client_info: ClientCredentials | None = None
    tokens: TokenSet | None = None
    code_verifier: str | None = None


class CredentialStore:
    """Persists client registration, token set and PKCE verifier per server.

    All public methods are coroutines; the file I/O runs in a worker thread so
    the event loop never waits on the filesystem.
    """

    def __init__(self, config_dir: Path | str | None = None) -> None:
        self.config_dir = Path(config_dir) if config_dir else default_config_dir()

    def path_for(self, server_hash: str, name: str) -> Path:
        return self.config_dir / f"{server_hash}_{name}"

    # ================================
    # Public API
    # ================================

    async def load(self, server_hash: str) -> StoredCredentials:
        return await asyncio.to_thread(self._load_sync, server_hash)

    async def load_tokens(self, server_hash: str) -> TokenSet | None:
        return await asyncio.to_thread(self._read_tokens, server_hash)

    async def save(
        self,
        server_hash: str,
        *,
        client_info: ClientCredentials | None = None,
        tokens: TokenSet | None = None,
        code_verifier: str | None = None,
    ) -> None:
        """Persist the given parts; parts left as None are not touched."""
        await asyncio.to_thread(
            self._save_sync, server_hash, client_info, tokens, code_verifier
        )

    async def clear(self, server_hash: str, scope: ClearScope = "all") -> None:
        await asyncio.to_thread(self._clear_sync, server_hash, scope)

    # ================================
    # Sync implementation
    # ================================

    def _load_sync(self, server_hash: str) -> StoredCredentials:
        return StoredCredentials(
            client_info=self._read_client_info(server_hash),
            tokens=self._read_tokens(server_hash),
            code_verifier=self._read_text(self.path_for(server_hash, _CODE_VERIFIER)),
        )

    def _read_client_info(self, server_hash: str) -> ClientCredentials | None:
        data = self._read_json(self.path_for(server_hash, _CLIENT_INFO))
        if data is None:
            return None
        try:
            return ClientCredentials.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid stored client info: {e}")
            return None

    def _read_tokens(self, server_hash: str) -> TokenSet | None:
        data = self._read_json(self.path_for(server_hash, _TOKENS))
        if data is None:
            return None
        try:
            return TokenSet.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid stored tokens: {e}")
            return None

    def _save_sync(
        self,
        server_hash: str,
        client_info: ClientCredentials | None,
        tokens: TokenSet | None,
        code_verifier: str | None,
    ) -> None:
        if client_info is not None:
            self._write_atomic(
                self.path_for(server_hash, _CLIENT_INFO),
                client_info.model_dump_json(exclude_none=True, indent=2),
            )
        if tokens is not None:
            self._write_atomic(
                self.path_for(server_hash, _TOKENS),
                tokens.model_dump_json(exclude_none=True, indent=2),
            )
        if code_verifier is not None:
            self._write_atomic(
                self.path_for(server_hash, _CODE_VERIFIER), code_verifier
            )

    def _clear_sync(self, server_hash: str, scope: ClearScope) -> None:
        names = {
            "all": (_CLIENT_INFO, _TOKENS, _CODE_VERIFIER),
            "client": (_CLIENT_INFO,),
            "tokens": (_TOKENS,),
            "verifier": (_CODE_VERIFIER,),
        }[scope]

        for name in names:
            self.path_for(server_hash, name).unlink(missing_ok=True)
        logger.debug(f"Cleared {scope} credentials for {server_hash}")

    # ================================
    # File helpers
    # ================================

    def _read_json(self, path: Path) -> dict | None:
        text = self._read_text(path)
        if text is None:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt credential file {path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _read_text(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write_atomic(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
