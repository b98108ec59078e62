from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

BROADCAST_PARTICIPANTS = "participants"
BROADCAST_GLOBAL = "global"
_BROADCAST_MODES = {BROADCAST_PARTICIPANTS, BROADCAST_GLOBAL}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    session_ttl_s: int = 14 * 24 * 60 * 60
    change_broadcast: str = BROADCAST_PARTICIPANTS
    log_level: str = "INFO"

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_s * 1000


def _parse_non_negative_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_choice(env: Mapping[str, str], name: str, default: str, choices: set[str], *, upper: bool = False) -> str:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().upper() if upper else raw.strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(sorted(choices))}")
    return value


def load_config_from_env(env: Mapping[str, str] | None = None) -> GatewayConfig:
    env = os.environ if env is None else env
    defaults = GatewayConfig()
    port = _parse_non_negative_int(env, "SNAPGRID_PORT", defaults.port)
    if port > 65535:
        raise ValueError("SNAPGRID_PORT must be at most 65535")
    return GatewayConfig(
        host=env.get("SNAPGRID_HOST") or defaults.host,
        port=port,
        db_path=env.get("SNAPGRID_DB_PATH") or None,
        ping_interval_s=max(1, _parse_non_negative_int(env, "SNAPGRID_PING_INTERVAL_S", defaults.ping_interval_s)),
        ping_miss_limit=_parse_non_negative_int(env, "SNAPGRID_PING_MISS_LIMIT", defaults.ping_miss_limit),
        max_msg_size=_parse_non_negative_int(env, "SNAPGRID_MAX_MSG_SIZE", defaults.max_msg_size),
        session_ttl_s=_parse_non_negative_int(env, "SNAPGRID_SESSION_TTL_S", defaults.session_ttl_s),
        change_broadcast=_parse_choice(
            env, "SNAPGRID_CHANGE_BROADCAST", defaults.change_broadcast, _BROADCAST_MODES
        ),
        log_level=_parse_choice(env, "SNAPGRID_LOG_LEVEL", defaults.log_level, _LOG_LEVELS, upper=True),
    )
