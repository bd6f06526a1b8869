"""
Load configuration and preset scenarios.

One LoadConfig holds the whole configuration surface: pacing policy and its
parameters, stop bounds, confirmation settings and the request template.
"""

import copy
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from .errors import ConfigError
from .pacing import FixedIntervalController, RoundBasedController

POLICIES = (FixedIntervalController.policy, RoundBasedController.policy)

DEFAULT_DESTINATION = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


@dataclass
class LoadConfig:
    """Everything a run needs, validated on creation."""
    policy: str = FixedIntervalController.policy
    test_type: str = "custom"

    # Fixed-interval pacing
    target_rate: Optional[float] = None
    tick_size: int = 1

    # Round-based pacing
    batch_size: Optional[int] = None
    concurrency: int = 1
    round_delay: float = 0.0

    # Stop bounds (whichever is reached first)
    duration: Optional[float] = None
    total: Optional[int] = None

    # Confirmation tracking
    track_confirmations: bool = True
    confirmation_timeout: float = 180.0
    confirmations_required: int = 1
    confirmation_batch_size: int = 50

    # Request template. `senders` (or the first `sender_count` node accounts)
    # overrides the single `sender`; requests rotate over them.
    sender: Optional[str] = None
    senders: List[str] = field(default_factory=list)
    sender_count: Optional[int] = None
    destinations: List[Any] = field(default_factory=lambda: [DEFAULT_DESTINATION])
    payload: Any = 10 ** 14
    resource_limit: int = 21000
    pricing: Dict[str, Any] = field(default_factory=dict)

    # Diagnostics
    error_log_limit: int = 100
    error_truncate: int = 100
    progress_every: int = 500
    show_live: bool = True
    handles_output: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.policy not in POLICIES:
            raise ConfigError(f"Unknown policy {self.policy!r}; expected one of {', '.join(POLICIES)}")
        if self.duration is None and self.total is None:
            raise ConfigError("Set a duration, a total request count, or both")
        if self.duration is not None and self.duration <= 0:
            raise ConfigError(f"duration must be > 0, got {self.duration}")
        if self.total is not None and self.total < 0:
            raise ConfigError(f"total must be >= 0, got {self.total}")

        if self.policy == FixedIntervalController.policy:
            if not self.target_rate or self.target_rate <= 0:
                raise ConfigError("fixed-interval pacing needs target_rate > 0")
            if self.tick_size < 1:
                raise ConfigError(f"tick_size must be >= 1, got {self.tick_size}")
        else:
            if not self.batch_size or self.batch_size < 1:
                raise ConfigError("round-based pacing needs batch_size >= 1")
            if self.concurrency < 1:
                raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
            if self.round_delay < 0:
                raise ConfigError(f"round_delay must be >= 0, got {self.round_delay}")

        if self.confirmation_timeout <= 0:
            raise ConfigError(f"confirmation_timeout must be > 0, got {self.confirmation_timeout}")
        if self.confirmations_required < 1:
            raise ConfigError(f"confirmations_required must be >= 1, got {self.confirmations_required}")
        if self.confirmation_batch_size < 1:
            raise ConfigError(f"confirmation_batch_size must be >= 1, got {self.confirmation_batch_size}")
        if self.error_log_limit < 0:
            raise ConfigError(f"error_log_limit must be >= 0, got {self.error_log_limit}")
        if not self.destinations:
            raise ConfigError("At least one destination is required")
        if len(set(self.senders)) != len(self.senders):
            raise ConfigError("senders must be distinct")
        if self.sender_count is not None and self.sender_count < 1:
            raise ConfigError(f"sender_count must be >= 1, got {self.sender_count}")
        if self.senders and self.sender_count is not None:
            raise ConfigError("Set senders or sender_count, not both")

    @property
    def round_size(self) -> Optional[int]:
        if self.policy != RoundBasedController.policy:
            return None
        return self.batch_size * self.concurrency

    @property
    def nominal_rate(self) -> Optional[float]:
        """Target rate when the policy enforces one."""
        if self.policy == FixedIntervalController.policy:
            return self.target_rate
        return None

    @classmethod
    def from_preset(cls, name: str, **overrides) -> "LoadConfig":
        if name not in PRESETS:
            raise ConfigError(f"Unknown preset {name!r}; available: {', '.join(PRESETS)}")
        params = copy.deepcopy(PRESETS[name]["params"])
        params.setdefault("test_type", name)
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        params.update(overrides)
        return cls(**params)


# =============================================================================
# PRESET CONFIGURATIONS
# =============================================================================

PRESETS: Dict[str, Dict[str, Any]] = {
    # -------------------------------------------------------------------------
    # FIXED INTERVAL
    # -------------------------------------------------------------------------
    "slow-10tps": {
        "name": "🐢 Slow 10 TPS",
        "description": "100 transfers at 10 TPS, one at a time",
        "params": {
            "policy": "fixed-interval",
            "target_rate": 10,
            "total": 100,
        },
    },
    "sustained-5tps": {
        "name": "🏃 Sustained 5 TPS",
        "description": "5 TPS for 5 minutes (1,500 transfers)",
        "params": {
            "policy": "fixed-interval",
            "target_rate": 5,
            "duration": 300,
            "total": 1500,
        },
    },
    "stress-100tps": {
        "name": "🏋️ Stress 100 TPS",
        "description": "100 TPS for 30 seconds, 10 per 100ms tick",
        "params": {
            "policy": "fixed-interval",
            "target_rate": 100,
            "tick_size": 10,
            "duration": 30,
            "total": 3000,
        },
    },
    "controlled-500tps": {
        "name": "🎯 Controlled 500 TPS",
        "description": "500 TPS for 30 seconds, 50 every 100ms",
        "params": {
            "policy": "fixed-interval",
            "target_rate": 500,
            "tick_size": 50,
            "duration": 30,
            "total": 15000,
        },
    },
    "multi-address-500tps": {
        "name": "🔀 Multi-Address 500 TPS",
        "description": "500 TPS for 30 seconds spread over 20 node accounts",
        "params": {
            "policy": "fixed-interval",
            "target_rate": 500,
            "tick_size": 50,
            "duration": 30,
            "sender_count": 20,
            "pricing": {"gas_price": 1_000_000_000},
        },
    },

    # -------------------------------------------------------------------------
    # ROUND BASED
    # -------------------------------------------------------------------------
    "burst-500tps": {
        "name": "💥 Burst 15K",
        "description": "15,000 transfers in back-to-back rounds of 500",
        "params": {
            "policy": "round-based",
            "batch_size": 500,
            "concurrency": 1,
            "total": 15000,
        },
    },
    "native-transfer": {
        "name": "🚀 Native Transfer Throughput",
        "description": "Rounds of 2 x 500 transfers with 100ms pause, for 60 seconds",
        "params": {
            "policy": "round-based",
            "batch_size": 500,
            "concurrency": 2,
            "round_delay": 0.1,
            "duration": 60,
            "pricing": {
                "max_priority_fee_per_gas": 1_000_000_000,
                "max_fee_per_gas": 50_000_000_000,
            },
        },
    },
}
