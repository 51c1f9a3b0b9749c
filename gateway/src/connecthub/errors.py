from __future__ import annotations


class GatewayError(Exception):
    """Base class for failures reported back to the originating connection."""

    code = "error"


class ValidationError(GatewayError):
    code = "validation_error"


class BlockedError(GatewayError):
    """A block relationship forbids the interaction (checked in both directions)."""

    code = "blocked"


class PersistenceError(GatewayError):
    code = "persistence_error"


class ForbiddenError(GatewayError):
    """A frame names an identity other than the one the session authenticated as."""

    code = "forbidden"
