from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    worker_count: int = 4
    default_seed: int = 42
    log_level: str = "INFO"


def load_settings() -> Settings:
    workers = int(os.environ.get("PSE_WORKERS", "4"))
    seed = int(os.environ.get("PSE_SEED", "42"))
    level = os.environ.get("PSE_LOG_LEVEL", "INFO").upper()
    return Settings(worker_count=max(1, workers), default_seed=seed, log_level=level)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
