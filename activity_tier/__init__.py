"""`activity_tier`: per-pool activity tiers (0-10) for dynamic trading fees.

Two write paths publish one tier per pool:
- an EMA of a price- or flow-velocity signal, mapped through a linear fee curve,
- rate-limited overrides from a trusted authority.

Everything under `core` and `state` is deterministic, integer-only and
immutable; `integration.tier_service.ActivityTierService` is the serialized
shell callers use.

Public API:
- `ActivityTierService(admin=..., authority=..., config=...)`
- `CurveParams`, `VelocityMode`, `default_params(mode)`
- `PrincipalCapability`, `BlsCapability`, `DenyAllCapability`
- `ServiceConfig`, `load_config(path)`, `config_from_env()`
"""

from .core.errors import (
    ActivityTierError,
    InvalidBatchError,
    InvalidParametersError,
    InvalidTierError,
    TierInvariantError,
    TooFrequentError,
    UnauthorizedError,
)
from .core.tier_engine import UpdateOutcome, UpdateResult, derive_tier, tier_fee_bps
from .integration.authority import (
    BlsCapability,
    Capability,
    DenyAllCapability,
    PrincipalCapability,
    call_payload,
    sign_call,
)
from .integration.config import ServiceConfig, config_from_env, load_config
from .integration.events import Event, TierEvent, TierSource
from .integration.tier_service import ActivityTierService, BatchResult
from .state.params import CurveParams, VelocityMode, default_params
from .state.records import MAX_TIER, Observation, TierState
from .state.store import derive_pool_key

__all__ = [
    "ActivityTierService",
    "BatchResult",
    "CurveParams",
    "VelocityMode",
    "default_params",
    "derive_pool_key",
    "derive_tier",
    "tier_fee_bps",
    "UpdateOutcome",
    "UpdateResult",
    "Observation",
    "TierState",
    "MAX_TIER",
    "Capability",
    "PrincipalCapability",
    "BlsCapability",
    "DenyAllCapability",
    "call_payload",
    "sign_call",
    "ServiceConfig",
    "load_config",
    "config_from_env",
    "Event",
    "TierEvent",
    "TierSource",
    "ActivityTierError",
    "UnauthorizedError",
    "InvalidTierError",
    "InvalidParametersError",
    "InvalidBatchError",
    "TooFrequentError",
    "TierInvariantError",
]
