"""Runtime configuration read from the environment.

Env vars:
- QAPILOT_AI_GATEWAY_URL (default https://ai.gateway.lovable.dev/v1)
- QAPILOT_AI_API_KEY (required for live completions)
- QAPILOT_MODEL (default google/gemini-2.5-flash)
- QAPILOT_CONNECT_TIMEOUT / QAPILOT_READ_TIMEOUT (seconds)
- QAPILOT_DUPLICATE_WINDOW / QAPILOT_DUPLICATE_FLOOR / QAPILOT_DUPLICATE_THRESHOLD
- QAPILOT_HISTORY_LIMIT (retained history entries, default 50)
- QAPILOT_HISTORY_STORE_IMPL / QAPILOT_SESSION_STORE_IMPL ("memory" or "file")
- QAPILOT_DATA_DIR (root for file-backed stores, default ./run)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str
    api_key: Optional[str]
    model: str
    connect_timeout: float = 3.0
    read_timeout: float = 60.0

    @staticmethod
    def from_env() -> "GatewayConfig":
        return GatewayConfig(
            base_url=os.getenv("QAPILOT_AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1"),
            api_key=os.getenv("QAPILOT_AI_API_KEY") or None,
            model=os.getenv("QAPILOT_MODEL", "google/gemini-2.5-flash"),
            connect_timeout=_env_float("QAPILOT_CONNECT_TIMEOUT", 3.0),
            read_timeout=_env_float("QAPILOT_READ_TIMEOUT", 60.0),
        )


@dataclass(frozen=True)
class EngineConfig:
    model: str = "google/gemini-2.5-flash"
    duplicate_window: int = 50
    duplicate_floor: float = 0.35
    duplicate_threshold: float = 0.75
    history_limit: int = 50

    @staticmethod
    def from_env() -> "EngineConfig":
        return EngineConfig(
            model=os.getenv("QAPILOT_MODEL", "google/gemini-2.5-flash"),
            duplicate_window=_env_int("QAPILOT_DUPLICATE_WINDOW", 50),
            duplicate_floor=_env_float("QAPILOT_DUPLICATE_FLOOR", 0.35),
            duplicate_threshold=_env_float("QAPILOT_DUPLICATE_THRESHOLD", 0.75),
            history_limit=_env_int("QAPILOT_HISTORY_LIMIT", 50),
        )


def data_dir() -> str:
    return os.getenv("QAPILOT_DATA_DIR", "run")
