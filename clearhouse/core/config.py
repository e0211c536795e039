"""
Settlement configuration parameters for Clearhouse.

Defines scheduling intervals, grace periods, ledger timeouts and
operational paths. Values come from defaults, a ``.env`` file and
``CLEARHOUSE_*`` environment variables, in increasing precedence.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values

ENV_PREFIX = "CLEARHOUSE_"

SECONDS_PER_DAY = 24 * 60 * 60

# Most ledger calls a settlement pass makes between two lease renewals
LEDGER_CALLS_PER_LEASE = 8

SIMULATED_GATEWAY = "clearhouse.core.ledger.simulated:from_config"


@dataclass
class SettlementConfig:
    """Engine-wide configuration parameters"""

    # Identities
    platform_identity: str = "platform"  # Custodian for escrowed claims
    settlement_currency: str = "RLUSD"

    # Scheduling
    auction_interval_seconds: int = 300  # Auction finalization every 5 minutes
    maturity_interval_seconds: int = 3600  # Maturity scan hourly

    # Settlement rules
    grace_period_seconds: int = 7 * SECONDS_PER_DAY  # Measured from maturity
    lease_seconds: int = 180  # Per-auction settlement lease
    ledger_timeout_seconds: float = 15.0  # Bound on every gateway call

    # Administrative cleanup
    stale_minting_seconds: int = 10 * 60
    stale_failed_seconds: int = 60 * 60

    # Collaborators
    gateway_factory: str = SIMULATED_GATEWAY

    # Paths
    db_path: Path = Path("data/clearhouse.db")
    log_dir: Path = Path("logs")
    log_level: str = "INFO"

    def __post_init__(self):
        """Coerce path fields and validate intervals"""
        self.db_path = Path(self.db_path)
        self.log_dir = Path(self.log_dir)
        if self.auction_interval_seconds <= 0 or self.maturity_interval_seconds <= 0:
            raise ValueError("Scheduler intervals must be positive")
        if self.grace_period_seconds < 0:
            raise ValueError("Grace period cannot be negative")
        if self.lease_seconds <= 0:
            raise ValueError("Lease duration must be positive")
        if self.lease_seconds <= LEDGER_CALLS_PER_LEASE * self.ledger_timeout_seconds:
            raise ValueError(
                f"Lease of {self.lease_seconds}s does not cover {LEDGER_CALLS_PER_LEASE} ledger calls "
                f"of {self.ledger_timeout_seconds}s"
            )

    def ensure_dirs(self) -> None:
        """Create necessary directories"""
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        self.log_dir.mkdir(exist_ok=True, parents=True)


def _coerce(raw: str, current):
    """Convert an env string to the type of the field's default."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, Path):
        return Path(raw).expanduser()
    return raw


def load_config(env_file: Optional[str] = None, **overrides) -> SettlementConfig:
    """
    Load configuration from a .env file and the process environment.

    Args:
        env_file: Optional path to a dotenv file
        **overrides: Explicit field values, applied last

    Returns:
        SettlementConfig instance
    """
    values = {}
    if env_file:
        values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    values.update(os.environ)

    defaults = SettlementConfig()
    kwargs = {}
    for f in fields(SettlementConfig):
        key = ENV_PREFIX + f.name.upper()
        if key in values:
            kwargs[f.name] = _coerce(values[key], getattr(defaults, f.name))

    kwargs.update({k: v for k, v in overrides.items() if v is not None})
    return SettlementConfig(**kwargs)
