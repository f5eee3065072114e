"""
Configuration module for cl-lightdash

Contains the Config dataclass that holds the named constants of the
fee control law, the rebalance planner and the routing analysis, plus
the execution switches that gate every side effect on the node.

Execution switches:
- EXECUTE_SETCHANNEL: apply setchannel actions instead of only logging them
- EXECUTE_SLING: start sling rebalances instead of only logging them

The switches are read once (from the environment for the CLI, from plugin
options inside lightningd) and the resulting Config is passed explicitly
to the ActionExecutor.
"""

import os
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Mapping, Optional, Tuple


# Environment variables that enable execution when present (any value)
ENV_EXECUTE_SETCHANNEL = 'EXECUTE_SETCHANNEL'
ENV_EXECUTE_SLING = 'EXECUTE_SLING'

# lightningd plugin option -> config field
PLUGIN_OPTIONS: Dict[str, str] = {
    'lightdash-execute-setchannel': 'execute_setchannel',
    'lightdash-execute-sling': 'execute_sling',
    'lightdash-ppm-min': 'ppm_min',
    'lightdash-ppm-max': 'ppm_max',
    'lightdash-source-ppm-max': 'source_ppm_max',
    'lightdash-sling-amount': 'sling_amount_sat',
}

# Type mapping for config fields (for validation and option parsing)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'ppm_min': int,
    'ppm_max': int,
    'step_perc': float,
    'step_perc_up': float,
    'min_effective_change': float,
    'fee_base_msat': int,
    'min_htlc_msat': int,
    'fk_tolerance': int,
    'source_ppm_max': int,
    'min_candidate_balance': float,
    'max_target_balance': float,
    'sling_amount_sat': int,
    'sling_job_amount_sat': int,
    'pull_in_balance': float,
    'push_out_balance': float,
    'route_riskfactor': int,
    'mature_channel_days': int,
    'execute_setchannel': bool,
    'execute_sling': bool,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, Tuple[float, float]] = {
    'ppm_min': (0, 100000),
    'ppm_max': (1, 100000),
    'step_perc': (0.0, 1.0),
    'step_perc_up': (0.0, 1.0),
    'min_effective_change': (0.0, 1.0),
    'fee_base_msat': (0, 100000),
    'min_htlc_msat': (0, 10**12),
    'fk_tolerance': (0, 10000),
    'source_ppm_max': (0, 100000),
    'min_candidate_balance': (0.0, 1.0),
    'max_target_balance': (0.0, 1.0),
    'sling_amount_sat': (1, 10**8),
    'sling_job_amount_sat': (1, 10**8),
    'pull_in_balance': (0.0, 1.0),
    'push_out_balance': (0.0, 1.0),
    'route_riskfactor': (0, 1000),
    'mature_channel_days': (0, 10000),
}


def _default_route_amounts() -> List[int]:
    return [1_000, 10_000, 100_000, 1_000_000, 10_000_000]


@dataclass
class Config:
    """
    Configuration container for cl-lightdash.

    All values can be overridden via plugin options or CLI flags; the
    defaults are the constants the fee and sling passes were tuned with.
    """

    # Fee control law
    ppm_min: int = 10                   # PPM_MIN, floor after adjustment
    ppm_max: int = 5000                 # PPM_MAX, ceiling after adjustment
    step_perc: float = 0.10             # Reduction step, scaled by our balance ratio
    step_perc_up: float = 0.05          # Increase step when the channel forwarded
    min_effective_change: float = 0.01  # Reductions smaller than 1% are skipped
    fee_base_msat: int = 1000           # FEE_BASE sent with every setchannel
    min_htlc_msat: int = 100000         # MIN_HTLC, capped by the new max HTLC
    fk_tolerance: int = 10              # Local failures tolerated before increasing

    # Sling one-shot pull planner
    source_ppm_max: int = 300           # Candidates must be cheaper than this
    min_candidate_balance: float = 0.7  # Candidates must hold more than 70%
    max_target_balance: float = 0.1     # Targets hold less than 10%
    sling_amount_sat: int = 100000      # amount and onceamount for sling-once

    # Legacy sling-job planner
    sling_job_amount_sat: int = 50000
    pull_in_balance: float = 0.3        # Below this (and sinking) -> PullIn
    push_out_balance: float = 0.7       # Above this (and sourcing) -> PushOut

    # Routing centrality
    route_riskfactor: int = 10
    route_amounts_sat: List[int] = field(default_factory=_default_route_amounts)

    # Dashboard
    mature_channel_days: int = 30       # Age after which an idle channel is "inactive"

    # Safety flags
    execute_setchannel: bool = False    # If False, setchannel actions are only logged
    execute_sling: bool = False         # If False, sling actions are only logged

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> 'Config':
        """
        Build a Config whose execution switches follow the environment.

        A switch is enabled when its variable is present, whatever its value.
        """
        if environ is None:
            environ = os.environ
        config = cls(**overrides)
        config.execute_setchannel = ENV_EXECUTE_SETCHANNEL in environ
        config.execute_sling = ENV_EXECUTE_SLING in environ
        return config

    @classmethod
    def from_plugin_options(cls, options: Mapping[str, Any]) -> Tuple['Config', List[str]]:
        """
        Build a Config from lightningd plugin options.

        Returns:
            (config, errors); options that fail to convert keep their default
            and are reported in errors together with validate() findings
        """
        config = cls()
        errors = []
        for name, key in PLUGIN_OPTIONS.items():
            value = options.get(name)
            if value is None:
                continue
            try:
                config.apply_option(key, value)
            except ValueError:
                errors.append(f"Invalid value {value!r} for {name}")
        return config, errors + config.validate()

    def apply_option(self, key: str, value: str) -> None:
        """Apply a string-valued option with type conversion."""
        if key not in CONFIG_FIELD_TYPES:
            raise KeyError(f"Unknown config key: {key}")
        field_type = CONFIG_FIELD_TYPES[key]
        if field_type == bool:
            typed_value: Any = str(value).lower() in ('true', '1', 'yes', 'on')
        elif field_type == int:
            typed_value = int(value)
        elif field_type == float:
            typed_value = float(value)
        else:
            typed_value = value
        setattr(self, key, typed_value)

    def validate(self) -> List[str]:
        """
        Check ranges and cross-field constraints.

        Returns:
            List of human readable errors, empty when the config is usable
        """
        errors = []
        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key)
            if not (min_val <= value <= max_val):
                errors.append(f"Value {value} out of range [{min_val}, {max_val}] for {key}")

        if self.ppm_min > self.ppm_max:
            errors.append(f"ppm_min ({self.ppm_min}) must not exceed ppm_max ({self.ppm_max})")
        if self.pull_in_balance > self.push_out_balance:
            errors.append("pull_in_balance must not exceed push_out_balance")
        if not self.route_amounts_sat or any(a <= 0 for a in self.route_amounts_sat):
            errors.append("route_amounts_sat must be a non-empty list of positive amounts")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)
