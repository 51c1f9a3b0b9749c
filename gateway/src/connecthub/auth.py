from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Mapping

from .models import Identity, is_identity, parse_identity


class Authenticator:
    """Identity lookup used by the WebSocket handshake and HTTP routes.

    Login and credential checks happen elsewhere; this only decides whether a
    connection may act as ``identity``.
    """

    async def authenticate(self, identity: Identity, token: str | None) -> bool:
        raise NotImplementedError

    async def resolve_token(self, token: str) -> Identity | None:
        raise NotImplementedError


class TrustingAuthenticator(Authenticator):
    """Accepts the identity the client declares; bearer tokens are identities."""

    async def authenticate(self, identity: Identity, token: str | None) -> bool:
        return is_identity(identity)

    async def resolve_token(self, token: str) -> Identity | None:
        if not token.strip():
            return None
        return parse_identity(token)


class TokenAuthenticator(Authenticator):
    def __init__(self, tokens: Mapping[str, Identity]) -> None:
        self._tokens: Dict[str, Identity] = dict(tokens)

    @classmethod
    def from_file(cls, path: str) -> "TokenAuthenticator":
        data: Any = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict) or any(not is_identity(v) for v in data.values()):
            raise ValueError(f"{path}: expected a JSON object mapping tokens to identities")
        return cls(data)

    async def authenticate(self, identity: Identity, token: str | None) -> bool:
        if token is None:
            return False
        return token in self._tokens and self._tokens[token] == identity

    async def resolve_token(self, token: str) -> Identity | None:
        return self._tokens.get(token)
