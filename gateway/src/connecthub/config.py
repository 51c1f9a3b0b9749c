from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from typing import Any, Mapping

ENV_PREFIX = "CONNECTHUB_"


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    outbound_queue_size: int = 1000
    ring_timeout_s: float = 45.0
    tokens_file: str | None = None
    log_level: str = "INFO"
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewayConfig":
        """Build a config from ``CONNECTHUB_*`` variables, e.g. ``CONNECTHUB_DB_PATH``."""

        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for field in dataclasses.fields(cls):
            raw = environ.get(ENV_PREFIX + field.name.upper())
            if raw is None:
                continue
            values[field.name] = _coerce(field.name, field.default, raw)
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "GatewayConfig":
        """Return a copy with every non-``None`` override applied."""

        changes = {name: value for name, value in overrides.items() if value is not None}
        return dataclasses.replace(self, **changes)


def _coerce(name: str, default: Any, raw: str) -> Any:
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name.upper()}: {exc}") from None
    return raw if raw.strip() else None
