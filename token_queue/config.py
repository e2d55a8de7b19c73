"""Configuration.

Two layers:

- `EngineConfig`: tunables of the queue core, passed explicitly to
  `TokenService` (easy to override in tests).
- `Settings`: process-level settings for the CLIs and the MQTT service,
  read from the environment (and a local `.env` file when present). They
  only provide argparse defaults; command-line flags still win.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class EngineConfig:
    # Estimate used when neither statistics nor the department know better.
    default_service_minutes: float = 10.0
    # Peek/reserve rounds before `call_next` gives up with ConcurrencyConflict.
    max_call_attempts: int = 3
    # A called token may be marked no-show once this much time has passed.
    no_show_grace_minutes: float = 5.0
    # Weighted queues: effective priority grows by this much per waited minute.
    aging_per_minute: float = 0.1
    # "near_turn" is notified once a token reaches one of these positions.
    near_turn_threshold: int = 3
    # Completed tokens kept per department for the rolling service average.
    rolling_window: int = 20

    def __post_init__(self) -> None:
        if self.default_service_minutes < 0:
            raise ValueError("default_service_minutes must be >= 0")
        if self.max_call_attempts < 1:
            raise ValueError("max_call_attempts must be >= 1")
        if self.no_show_grace_minutes < 0:
            raise ValueError("no_show_grace_minutes must be >= 0")
        if self.aging_per_minute < 0:
            raise ValueError("aging_per_minute must be >= 0")
        if self.rolling_window < 1:
            raise ValueError("rolling_window must be >= 1")


@dataclass(frozen=True)
class Settings:
    mqtt_host: str = "127.0.0.1"
    mqtt_port: int = 1883
    namespace: str = "tokenq/v0"
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Read `TOKENQ_*` environment variables (after loading `.env`)."""
    load_dotenv()
    return Settings(
        mqtt_host=os.getenv("TOKENQ_MQTT_HOST", Settings.mqtt_host),
        mqtt_port=int(os.getenv("TOKENQ_MQTT_PORT", str(Settings.mqtt_port))),
        namespace=os.getenv("TOKENQ_NAMESPACE", Settings.namespace),
        log_level=os.getenv("TOKENQ_LOG_LEVEL", Settings.log_level).upper(),
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
