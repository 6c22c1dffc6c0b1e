# src/recurctl/engine/config.py

"""
Runtime settings.

Defaults are suitable for interactive use; environment variables
override them and CLI flags override the environment.

Environment:
- RECURCTL_USER            default user id
- RECURCTL_STORE_DIR       store directory name inside the project dir
- RECURCTL_RETRY_ATTEMPTS  storage attempts per operation
- RECURCTL_RETRY_DELAY     base backoff delay in seconds
- RECURCTL_CONFLICT_RETRIES  transaction retries on concurrent writes
"""

import os
from dataclasses import dataclass
from typing import Final, Mapping, Optional


DEFAULT_STORE_DIR: Final[str] = ".recurring"
DEFAULT_USER: Final[str] = "local"


@dataclass(frozen=True, slots=True)
class Settings:
    user_id: str = DEFAULT_USER
    store_dir: str = DEFAULT_STORE_DIR

    # Storage retry policy: attempts with exponential backoff (1s, 2s, 4s).
    retry_attempts: int = 3
    retry_base_delay: float = 1.0

    # Whole-transaction retries on ConcurrencyConflict.
    conflict_retries: int = 5

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        base = cls()

        return cls(
            user_id=(env.get("RECURCTL_USER") or base.user_id).strip(),
            store_dir=(env.get("RECURCTL_STORE_DIR") or base.store_dir).strip(),
            retry_attempts=_int_env(env, "RECURCTL_RETRY_ATTEMPTS", base.retry_attempts),
            retry_base_delay=_float_env(env, "RECURCTL_RETRY_DELAY", base.retry_base_delay),
            conflict_retries=_int_env(env, "RECURCTL_CONFLICT_RETRIES", base.conflict_retries),
        )


def _int_env(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be an integer, got '{raw}'") from e
    if value < 1:
        raise ValueError(f"{key} must be >= 1")
    return value


def _float_env(env: Mapping[str, str], key: str, default: float) -> float:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be a number, got '{raw}'") from e
    if value < 0:
        raise ValueError(f"{key} must be >= 0")
    return value
