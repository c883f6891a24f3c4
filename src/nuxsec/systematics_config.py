"""Configuration of the systematics builders.

The catalogue of systematics and the build options are usually read from YAML:

```yaml
systematics:
  unisim:
    - name: RPA_CCQE
      up_weight_ratio_column: knobRPAup
      down_weight_ratio_column: knobRPAdn
  multisim:
    - name: ppfx
      weight_vector_column: weightsPPFX
      central_value_column: ppfx_cv
      max_universes: 600
      max_modes: 30
options:
  thread_count: 4
  clamp_negative_bins: true
```

Anything which isn't specified takes the default value of the corresponding class.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import attrs
import yaml

from nuxsec.errors import ConfigurationError
from nuxsec.samples import SampleFilter

logger = logging.getLogger(__name__)


def _validate_name(kind: str, name: str) -> None:
    if not name or "/" in name:
        msg = f"Invalid {kind} systematic name '{name}' (must be non-empty and free of '/')"
        raise ConfigurationError(msg, systematic=name or None)


def _select_keys(config: dict[str, Any], cls: type, kind: str) -> dict[str, Any]:
    known = {a.name for a in attrs.fields(cls)}
    unknown = set(config) - known
    if unknown:
        msg = f"Unknown {kind} settings: {sorted(unknown)}. Available: {sorted(known)}"
        raise ConfigurationError(msg, systematic=config.get("name"))
    return dict(config)


@attrs.frozen
class UnisimSpec:
    """Single alternative weighting, giving one up/down pair per template.

    Attributes:
        name: Name of the systematic.
        up_weight_ratio_column: Column with the per-event up/nominal weight ratio.
        down_weight_ratio_column: Column with the per-event down/nominal weight ratio.
            Not used if one_sided.
        one_sided: If True, the down variation is the nominal.
        log_normal: Flag recorded in the metadata for downstream fitters.
        floatable: Flag recorded in the metadata for downstream fitters.
    """

    name: str
    up_weight_ratio_column: str
    down_weight_ratio_column: str | None = None
    one_sided: bool = False
    log_normal: bool = False
    floatable: bool = False

    def __attrs_post_init__(self) -> None:
        _validate_name("unisim", self.name)
        if not self.up_weight_ratio_column:
            msg = "Unisim systematic requires an up_weight_ratio_column"
            raise ConfigurationError(msg, systematic=self.name)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> UnisimSpec:
        return cls(**_select_keys(config, cls, "unisim"))


@attrs.frozen
class MultisimSpec:
    """Ensemble of universes of alternative weights, reduced to eigenmodes.

    Attributes:
        name: Name of the systematic.
        weight_vector_column: Column with the per-event vector of universe weights.
        central_value_column: Column with the per-event central value weight. Universe
            weights are divided by it. Default: None, i.e. no division.
        max_universes: Number of universes to use. -1 means auto detect from the
            first event. Default: -1.
        max_modes: Maximum number of eigenmodes to keep. Default: 20.
        keep_fraction: Fraction of the total variance to keep, in (0, 1]. Default: 0.99.
        split_rate_shape: Remove the global rate change of each universe before
            accumulating the covariance. Default: True.
        rate_log_normal: If also splitting rate and shape, emit a separate log-normal
            rate systematic. Default: True.
    """

    name: str
    weight_vector_column: str
    central_value_column: str | None = None
    max_universes: int = -1
    max_modes: int = 20
    keep_fraction: float = 0.99
    split_rate_shape: bool = True
    rate_log_normal: bool = True

    def __attrs_post_init__(self) -> None:
        _validate_name("multisim", self.name)
        if not self.weight_vector_column:
            msg = "Multisim systematic requires a weight_vector_column"
            raise ConfigurationError(msg, systematic=self.name)
        if self.max_modes < 1:
            msg = f"max_modes must be >= 1, got {self.max_modes}"
            raise ConfigurationError(msg, systematic=self.name)
        if not 0.0 < self.keep_fraction <= 1.0:
            msg = f"keep_fraction must be in (0, 1], got {self.keep_fraction}"
            raise ConfigurationError(msg, systematic=self.name)

    @property
    def rate_name(self) -> str:
        return f"{self.name}_rate"

    def mode_name(self, m: int) -> str:
        return f"{self.name}_mode{m:02d}"

    def owns_output(self, systematic_name: str) -> bool:
        """Whether a stored systematic was written by this one: itself, its rate or one of its modes."""
        if systematic_name in (self.name, self.rate_name):
            return True
        return re.fullmatch(rf"{re.escape(self.name)}_mode\d+", systematic_name) is not None

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> MultisimSpec:
        config = _select_keys(config, cls, "multisim")
        # An empty central value column means no central value
        if not config.get("central_value_column"):
            config["central_value_column"] = None
        return cls(**config)


@attrs.frozen
class BuildOptions:
    """Options of a systematics run.

    Attributes:
        thread_count: Number of workers used by the histogram engine. Default: 1.
        include_overlay: Vary overlay samples. Default: True.
        include_dirt: Vary dirt samples. Default: True.
        include_strangeness: Vary strangeness samples. Default: True.
        clamp_negative_bins: Clamp negative bins of eigenmode variations to 0. Default: True.
        engine: Name of the histogram engine backend. Default: "dataframe".
    """

    thread_count: int = 1
    include_overlay: bool = True
    include_dirt: bool = True
    include_strangeness: bool = True
    clamp_negative_bins: bool = True
    engine: str = "dataframe"

    def __attrs_post_init__(self) -> None:
        if self.thread_count < 1:
            msg = f"thread_count must be >= 1, got {self.thread_count}"
            raise ConfigurationError(msg)

    @property
    def sample_filter(self) -> SampleFilter:
        return SampleFilter(
            include_overlay=self.include_overlay,
            include_dirt=self.include_dirt,
            include_strangeness=self.include_strangeness,
        )

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> BuildOptions:
        return cls(**_select_keys(config or {}, cls, "option"))


@attrs.frozen
class SystematicsConfig:
    unisim: tuple[UnisimSpec, ...] = attrs.field(converter=tuple, factory=tuple)
    multisim: tuple[MultisimSpec, ...] = attrs.field(converter=tuple, factory=tuple)

    def __attrs_post_init__(self) -> None:
        names = [s.name for s in self.unisim] + [s.name for s in self.multisim]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            msg = f"Duplicate systematic names: {duplicates}"
            raise ConfigurationError(msg)

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.unisim] + [s.name for s in self.multisim]

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> SystematicsConfig:
        """Construct from a dict with optional "unisim" and "multisim" lists."""
        unknown = set(config) - {"unisim", "multisim"}
        if unknown:
            msg = f"Unknown systematics categories: {sorted(unknown)}"
            raise ConfigurationError(msg)
        try:
            return cls(
                unisim=[UnisimSpec.from_config(c) for c in config.get("unisim") or []],
                multisim=[MultisimSpec.from_config(c) for c in config.get("multisim") or []],
            )
        except TypeError as e:
            # Missing required keys
            msg = f"Malformed systematics configuration: {e}"
            raise ConfigurationError(msg) from e

    @classmethod
    def from_config_file(cls, config_file: str | Path) -> SystematicsConfig:
        config_file = Path(config_file)
        try:
            with config_file.open() as stream:
                config = yaml.safe_load(stream)
        except (OSError, yaml.YAMLError) as e:
            msg = f"Failed to read systematics configuration {config_file}"
            raise ConfigurationError(msg, key=str(config_file)) from e

        # Allow the catalogue to be nested under "systematics", as in the run configuration
        config = config or {}
        if "systematics" in config:
            config = config["systematics"] or {}
        systematics = cls.from_config(config)
        logger.info(
            f"Read {len(systematics.unisim)} unisim and {len(systematics.multisim)} multisim systematics from {config_file}"
        )
        return systematics


def default_systematics() -> SystematicsConfig:
    """Default catalogue of systematics for the MicroBooNE style event trees.

    A new config is constructed on each call.
    """
    return SystematicsConfig(
        unisim=[
            UnisimSpec("RPA_CCQE", "knobRPAup", "knobRPAdn"),
            UnisimSpec("XSecShape_CCMEC", "knobCCMECup", "knobCCMECdn"),
            UnisimSpec("DecayAngMEC", "knobDecayAngMECup", "knobDecayAngMECdn"),
            UnisimSpec("Theta_Delta2Npi", "knobThetaDelta2Npiup", "knobThetaDelta2Npidn"),
            UnisimSpec("NormCCCOH", "knobNormCCCOHup", "knobNormCCCOHdn", one_sided=True, log_normal=True),
            UnisimSpec("NormNCCOH", "knobNormNCCOHup", "knobNormNCCOHdn", one_sided=True, log_normal=True),
        ],
        multisim=[
            MultisimSpec(
                "ppfx",
                "weightsPPFX",
                "ppfx_cv",
                max_universes=600,
                max_modes=30,
                keep_fraction=0.99,
                split_rate_shape=True,
                rate_log_normal=True,
            ),
            MultisimSpec(
                "genie_all",
                "weightsGenie",
                max_universes=-1,
                max_modes=30,
                keep_fraction=0.99,
                split_rate_shape=True,
                rate_log_normal=False,
            ),
            MultisimSpec(
                "reint",
                "weightsReint",
                max_universes=-1,
                max_modes=20,
                keep_fraction=0.99,
                split_rate_shape=True,
                rate_log_normal=False,
            ),
        ],
    )
