# config.py
# Deployment settings. Domain thresholds live in constants.py.

import os
from dataclasses import dataclass
from typing import Optional

from constants import CYCLE_CONSTANTS

COHORT = {
    # Synthetic cohort baseline ranges
    "baseline_egfr_range": (20.0, 100.0),
    "baseline_uacr_range": (5.0, 400.0),

    # Diabetes mix: (label, share)
    "diabetes_mix": (("none", 0.50), ("type2", 0.40), ("type1", 0.10)),
}

APP = {
    "title": "NephroFlow API",
    "description": (
        "CKD progression dashboard engine: KDIGO staging, transition detection "
        "and cohort simulation.\n\n"
        "**WARNING**: Decision Support Tool Only. Not for autonomous clinical use."
    ),
    "logger_name": "nephroflow-api",
}


@dataclass
class Settings:
    cycle_policy: str = "clinical"          # "clinical" (24 cycles) or "rolling" (12 slots)
    seed: int = 42
    cohort_size: int = 50
    workers: int = 4
    lock_timeout_seconds: float = 30.0
    auto_initiation_probability: float = CYCLE_CONSTANTS.AUTO_INITIATION_PROBABILITY
    database_url: Optional[str] = None      # None -> in-memory store
    log_level: str = "INFO"

    def __post_init__(self):
        if self.cycle_policy not in ("clinical", "rolling"):
            raise ValueError(f"Unknown cycle policy '{self.cycle_policy}' (expected clinical or rolling)")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if not (0.0 <= self.auto_initiation_probability <= 1.0):
            raise ValueError("auto_initiation_probability must be within [0, 1]")


def load_settings(env=None) -> Settings:
    env = os.environ if env is None else env
    return Settings(
        cycle_policy=env.get("NEPHROFLOW_CYCLE_POLICY", "clinical").strip().lower(),
        seed=int(env.get("NEPHROFLOW_SEED", "42")),
        cohort_size=int(env.get("NEPHROFLOW_COHORT_SIZE", "50")),
        workers=int(env.get("NEPHROFLOW_WORKERS", "4")),
        lock_timeout_seconds=float(env.get("NEPHROFLOW_LOCK_TIMEOUT", "30")),
        auto_initiation_probability=float(
            env.get("NEPHROFLOW_AUTO_INITIATION", str(CYCLE_CONSTANTS.AUTO_INITIATION_PROBABILITY))),
        database_url=env.get("DATABASE_URL", "").strip() or None,
        log_level=env.get("NEPHROFLOW_LOG_LEVEL", "INFO").strip().upper(),
    )
