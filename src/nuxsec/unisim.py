"""Unisim variations: one alternative weighting gives one up/down pair per template.

For each event of a simulation sample:

- up weight = nominal weight * up ratio
- down weight = nominal weight * down ratio, or just the nominal weight if the systematic is one sided.

The nominal weight of a template is its weight expression, or the sample's nominal weight
if the template doesn't specify one. All of the up and down histograms of a sample are
booked together and realised in one batch.
"""

from __future__ import annotations

import logging

import attrs
import numpy as np
import numpy.typing as npt

from nuxsec.errors import ConfigurationError, DataAvailabilityError, SystematicsError
from nuxsec.histogramming.base import Histogram1D, HistogramEngine, PendingHistogram
from nuxsec.samples import Sample
from nuxsec.systematics_config import UnisimSpec
from nuxsec.template_IO import SystematicVariation, flag
from nuxsec.template_spec import TemplateSpec

logger = logging.getLogger(__name__)


@attrs.frozen(eq=False)
class UnisimVariation:
    """Up ("pos") and down ("neg") histograms of one sample, keyed by template name."""

    systematic: str
    sample: str
    pos: dict[str, Histogram1D]
    neg: dict[str, Histogram1D]

    def as_variations(self) -> list[SystematicVariation]:
        return [
            SystematicVariation(
                systematic_name=self.systematic,
                variation_label=label,
                histograms={(self.sample, name): h for name, h in hists.items()},
            )
            for label, hists in (("pos", self.pos), ("neg", self.neg))
        ]


def unisim_metadata(spec: UnisimSpec) -> dict[str, str]:
    return {"type": "unisim", "log_normal": flag(spec.log_normal), "floatable": flag(spec.floatable)}


def _ratio(engine: HistogramEngine, sample: Sample, spec: UnisimSpec, column: str) -> npt.NDArray[np.float64]:
    if not engine.has_column(sample.events, column):
        msg = f"Weight ratio column '{column}' is not available"
        raise DataAvailabilityError(msg, systematic=spec.name, sample=sample.name, key=column)
    return np.asarray(engine.column_values(sample.events, column), dtype=np.float64)


def build_unisim(
    sample: Sample, templates: list[TemplateSpec], spec: UnisimSpec, engine: HistogramEngine
) -> UnisimVariation:
    """Compute the up/down variation of every template for one sample.

    Args:
        sample: Simulation sample.
        templates: Templates to vary.
        spec: Unisim systematic.
        engine: Histogram engine used to realise the histograms.
    Returns:
        Up and down histograms, keyed by template name.
    Raises:
        ConfigurationError: If a two sided systematic doesn't specify a down ratio column.
        DataAvailabilityError: If a ratio column is missing from the sample.
    """
    if not spec.one_sided and not spec.down_weight_ratio_column:
        msg = "Two sided unisim systematic requires a down_weight_ratio_column"
        raise ConfigurationError(msg, systematic=spec.name, sample=sample.name)

    try:
        up_ratio = _ratio(engine, sample, spec, spec.up_weight_ratio_column)
        down_ratio = None
        if spec.down_weight_ratio_column and not spec.one_sided:
            down_ratio = _ratio(engine, sample, spec, spec.down_weight_ratio_column)

        nominal_weights: dict[str, npt.NDArray[np.float64]] = {}
        up: dict[str, PendingHistogram] = {}
        down: dict[str, PendingHistogram] = {}
        for template in templates:
            weight = template.weight_or(sample.nominal_weight)
            if weight not in nominal_weights:
                nominal_weights[weight] = np.asarray(engine.column_values(sample.events, weight), dtype=np.float64)
            nominal = nominal_weights[weight]

            up[template.name] = engine.book(
                sample.events, template.selection, template.variable, nominal * up_ratio, template.binning
            )
            # One sided: the down variation is exactly the nominal
            down_weight = weight if down_ratio is None else nominal * down_ratio
            down[template.name] = engine.book(
                sample.events, template.selection, template.variable, down_weight, template.binning
            )

        engine.evaluate([*up.values(), *down.values()])
    except SystematicsError as e:
        e.with_context(systematic=spec.name, sample=sample.name)
        raise

    logger.debug(f"Built unisim '{spec.name}' for sample '{sample.name}' ({len(templates)} templates)")
    return UnisimVariation(
        systematic=spec.name,
        sample=sample.name,
        pos={name: p.result for name, p in up.items()},  # type: ignore[misc]
        neg={name: p.result for name, p in down.items()},  # type: ignore[misc]
    )
