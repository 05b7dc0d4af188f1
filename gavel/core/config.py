"""
Engine configuration parameters for Gavel.

Defines storage location, outbox relay cadence and retry ceilings,
escalation thresholds and bid-retraction limits. Values are consumed by
the core, never owned by it: `load_config` layers a .env file and
GAVEL_* environment variables over the defaults.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ENV_PREFIX = "GAVEL_"


@dataclass
class EngineConfig:
    """Engine-wide configuration parameters"""

    # Storage
    db_path: Path = Path("data") / "gavel.db"

    # Outbox relay
    poll_interval_ms: int = 100          # Polling cadence
    batch_size: int = 100                # Events per poll
    publish_timeout_seconds: float = 5.0  # Per-event publish bound
    max_attempts: int = 5                # Dead-letter ceiling
    backoff_base_ms: int = 200           # First retry delay
    backoff_max_ms: int = 30_000         # Retry delay cap
    lease_ttl_seconds: int = 10          # Single-flight lease lifetime
    relay_partition: str = "default"

    # Rule engine
    escalation_threshold: str = "error"  # Lowest severity that escalates
    escalation_delay_seconds: int = 900  # First escalation after 15 minutes
    max_escalation_level: int = 3

    # Bidding
    retraction_cutoff_seconds: int = 300  # No retraction in the last 5 minutes

    # Read cache
    cache_staleness_seconds: float = 2.0

    # Logging
    log_level: str = "INFO"
    log_levels: str = ""                 # Per subsystem, e.g. "outbox.relay=DEBUG,rules=WARNING"
    log_dir: Optional[Path] = None

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000


def _coerce(raw: str, target_type, current):
    """Convert an environment string to the type of the default value."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, Path) or target_type in (Path, Optional[Path]):
        return Path(raw)
    return raw


def load_config(env_file: Optional[str] = None) -> EngineConfig:
    """
    Load configuration from .env file and environment.

    Each field maps to GAVEL_<FIELD_NAME>, e.g. GAVEL_POLL_INTERVAL_MS=250.

    Args:
        env_file: Optional path to a .env file (defaults to ./.env lookup)

    Returns:
        EngineConfig instance
    """
    load_dotenv(dotenv_path=env_file, override=False)

    config = EngineConfig()
    for f in fields(EngineConfig):
        raw = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
        if raw is None or raw == "":
            continue
        setattr(config, f.name, _coerce(raw, f.type, getattr(config, f.name)))

    return config
