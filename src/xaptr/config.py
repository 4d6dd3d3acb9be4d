from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any, Literal

import attrs
from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError

from .errors import ConfigurationError
from .model import POLARITIES, Polarity

SignificanceMethod = Literal["welch", "pooled-stddev"]

DEFAULT_CONFIGURATION = "Release"
DEFAULT_BUILD_COMMAND = "dotnet"
DEFAULT_REPETITION_COUNT = 10

# Metrics produced by the executor itself. Anything else (custom markers) falls
# back to higher-is-worse unless the config file says otherwise.
DEFAULT_POLARITIES: dict[str, Polarity] = {
    "build_time_ms": "higher-is-worse",
    "install_time_ms": "higher-is-worse",
    "launch_wait_ms": "higher-is-worse",
    "cold_start_total_ms": "higher-is-worse",
    "cold_start_displayed_ms": "higher-is-worse",
    "steady_state_pss_bytes": "higher-is-worse",
}


@attrs.define(frozen=True, slots=True)
class PhaseTimeouts:
    """Per-phase timeouts in seconds."""

    build_s: float = 1800.0
    deploy_s: float = 300.0
    launch_s: float = 120.0
    profiler_s: float = 120.0
    device_command_s: float = 30.0

    def validate(self) -> None:
        for field in attrs.fields(PhaseTimeouts):
            v = getattr(self, field.name)
            if v <= 0:
                raise ConfigurationError(f"timeout {field.name} must be > 0 (got {v})")


@attrs.define(frozen=True, slots=True)
class ComparisonPolicy:
    """Noise threshold policy used to turn two distributions into a verdict.

    A change is reported only when it is statistically significant under
    `method` *and* its magnitude clears the floor: `min_percent_change`
    (relative to the larger of the two means) or, when either mean is zero,
    `min_absolute_delta`.
    """

    method: SignificanceMethod = "welch"
    alpha: float = 0.05
    stddev_multiplier: float = 2.0
    min_percent_change: float = 2.0
    min_absolute_delta: float = 0.0
    min_samples: int = 2
    polarities: dict[str, Polarity] = attrs.field(factory=dict)

    def validate(self) -> None:
        if self.method not in ("welch", "pooled-stddev"):
            raise ConfigurationError(f"Unknown significance method: {self.method!r}")
        if not 0 < self.alpha < 1:
            raise ConfigurationError(f"alpha must be between 0 and 1 (exclusive), got {self.alpha}")
        if self.stddev_multiplier <= 0:
            raise ConfigurationError(f"stddev_multiplier must be > 0, got {self.stddev_multiplier}")
        if self.min_percent_change < 0 or self.min_absolute_delta < 0:
            raise ConfigurationError("change floors must be non-negative")
        if self.min_samples < 2:
            raise ConfigurationError(f"min_samples must be >= 2, got {self.min_samples}")
        for key, polarity in self.polarities.items():
            if polarity not in POLARITIES:
                raise ConfigurationError(f"Unknown polarity {polarity!r} for metric {key!r}")

    def polarity_for(self, key: str) -> Polarity:
        if key in self.polarities:
            return self.polarities[key]
        return DEFAULT_POLARITIES.get(key, "higher-is-worse")


@attrs.define(frozen=True, slots=True)
class PerfTestConfig:
    project_path: Path
    package_name: str
    data_dir: Path
    configuration: str = DEFAULT_CONFIGURATION
    build_command: str = DEFAULT_BUILD_COMMAND
    repetition_count: int = DEFAULT_REPETITION_COUNT
    profile_managed: bool = False
    profile_native: bool = False
    managed_profiler_options: str = "log:calls,alloc"
    adb: str = "adb"
    device_serial: str | None = None
    steady_state_delay_s: float = 5.0
    cooldown_s: float = 0.0
    max_consecutive_failures: int = 3
    max_retries: int = 0
    timeouts: PhaseTimeouts = attrs.field(factory=PhaseTimeouts)

    @property
    def project_identity(self) -> str:
        return str(self.project_path)

    def validate(self) -> None:
        if self.repetition_count < 1:
            raise ConfigurationError(f"Repetition count must be at least 1 (got {self.repetition_count})")
        if not self.project_path.is_file():
            raise ConfigurationError(f"Project file not found: {self.project_path}")
        if not self.package_name:
            raise ConfigurationError("Package name is empty")
        if not self.build_command.strip():
            raise ConfigurationError("Build command is empty")
        if self.max_consecutive_failures < 0:
            raise ConfigurationError("max_consecutive_failures must be >= 0 (0 disables early abort)")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.steady_state_delay_s < 0 or self.cooldown_s < 0:
            raise ConfigurationError("delays must be non-negative")
        self.timeouts.validate()


@attrs.define(frozen=True, slots=True)
class CompareConfig:
    baseline_dir: Path
    candidate_dir: Path
    output_dir: Path
    policy: ComparisonPolicy = attrs.field(factory=ComparisonPolicy)


def _config_schema() -> dict[str, Any]:
    text = resources.files("xaptr").joinpath("schemas").joinpath("config.schema.json").read_text()
    return json.loads(text)


def load_config_file(path: Path) -> dict[str, Any]:
    """Load and validate an xaptr JSON configuration file.

    The returned mapping is used as a set of defaults; explicit CLI options win.
    """
    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e
    try:
        Draft202012Validator(_config_schema()).validate(data)
    except ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"Config file {path}: {where}: {e.message}") from e
    return data


def timeouts_from_mapping(data: dict[str, Any] | None) -> PhaseTimeouts:
    if not data:
        return PhaseTimeouts()
    known = {f.name for f in attrs.fields(PhaseTimeouts)}
    return PhaseTimeouts(**{k: float(v) for k, v in data.items() if k in known})


def policy_from_mapping(data: dict[str, Any] | None, **overrides: Any) -> ComparisonPolicy:
    """Build a ComparisonPolicy from the config file's `compare` section plus CLI overrides (None = unset)."""
    merged: dict[str, Any] = {}
    known = {f.name for f in attrs.fields(ComparisonPolicy)}
    for k, v in (data or {}).items():
        if k in known:
            merged[k] = v
    for k, v in overrides.items():
        if v is not None:
            merged[k] = v
    if "polarities" in merged:
        merged["polarities"] = dict(merged["polarities"])
    policy = ComparisonPolicy(**merged)
    policy.validate()
    return policy
