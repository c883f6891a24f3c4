"""Multisim covariance: an ensemble of universes of weights, reduced to a covariance matrix.

All varied samples and templates are stacked into one vector of length L, so the
covariance captures correlations between bins, templates and samples:

    T = [sample_0/template_0 bins, sample_0/template_1 bins, ..., sample_1/template_0 bins, ...]

For each universe u, the stacked vector T_u is compared to the stored nominal T_0.
If the rate and shape are split, the global rate change of each universe is removed
first (`systematic_tools.remove_global_rate`), and the log of the rate scale is kept to
build a separate log-normal rate systematic. The covariance is

    V = (1/U) sum_u R_u R_u^T

Note:
    V is a dense L x L float64 matrix, and each universe adds an outer product, so the
    cost is O(L^2) memory and O(U L^2) CPU. L = n_samples * sum(template bins) is chosen
    when designing the templates, so keep it in mind when adding samples or bins.
    The universe factors are also held in memory for each sample, which costs
    n_events * U float64 values.
"""

from __future__ import annotations

import logging

import attrs
import numpy as np
import numpy.typing as npt

from nuxsec import systematic_tools
from nuxsec.errors import DataAvailabilityError, DegenerateInputError, SystematicsError
from nuxsec.histogramming.base import Histogram1D, HistogramEngine, PendingHistogram
from nuxsec.samples import Sample
from nuxsec.systematics_config import MultisimSpec
from nuxsec.template_IO import SystematicVariation, TemplateStore, flag
from nuxsec.template_spec import TemplateSpec

logger = logging.getLogger(__name__)


@attrs.frozen
class Block:
    """Location of one (sample, template) histogram within the stacked vector."""

    sample_name: str
    template_name: str
    n_bins: int
    offset: int

    @property
    def key(self) -> tuple[str, str]:
        return (self.sample_name, self.template_name)

    @property
    def slice(self) -> slice:
        return slice(self.offset, self.offset + self.n_bins)


def make_blocks(sample_names: list[str], templates: list[TemplateSpec]) -> tuple[list[Block], int]:
    """Lay out the stacked vector in (sample, template) order.

    Returns:
        Blocks, total length L.
    """
    blocks = []
    offset = 0
    for sample_name in sample_names:
        for template in templates:
            blocks.append(
                Block(sample_name=sample_name, template_name=template.name, n_bins=template.n_bins, offset=offset)
            )
            offset += template.n_bins
    return blocks, offset


def stack(blocks: list[Block], values: dict[tuple[str, str], npt.NDArray[np.float64]], length: int) -> npt.NDArray[np.float64]:
    stacked = np.zeros(length, dtype=np.float64)
    for block in blocks:
        stacked[block.slice] = values[block.key]
    return stacked


@attrs.frozen(eq=False)
class MultisimCovariance:
    """Result of the multisim covariance builder.

    Attributes:
        spec: Multisim systematic.
        blocks: Layout of the stacked vector.
        nominal_histograms: Stored nominal histograms, keyed by (sample, template).
        covariance: Covariance matrix (L, L).
        thetas: log of the rate scale of each universe. Empty if the rate and shape aren't split.
        n_universes: Number of universes U.
    """

    spec: MultisimSpec
    blocks: list[Block]
    nominal_histograms: dict[tuple[str, str], Histogram1D]
    covariance: npt.NDArray[np.float64]
    thetas: npt.NDArray[np.float64]
    n_universes: int

    @property
    def length(self) -> int:
        return int(self.covariance.shape[0])

    @property
    def nominal(self) -> npt.NDArray[np.float64]:
        return stack(self.blocks, {k: h.values for k, h in self.nominal_histograms.items()}, self.length)

    @property
    def nominal_errors(self) -> npt.NDArray[np.float64]:
        return stack(self.blocks, {k: h.errors for k, h in self.nominal_histograms.items()}, self.length)

    @property
    def has_rate_systematic(self) -> bool:
        return self.spec.split_rate_shape and self.spec.rate_log_normal

    @property
    def sigma_theta(self) -> float:
        return systematic_tools.rms(self.thetas)

    def rate_variation(self) -> list[SystematicVariation]:
        """Log-normal rate systematic: nominal * exp(+-sigma_theta) for every block.

        Returns:
            "pos" and "neg" variations, or an empty list if no rate systematic is configured.
        """
        if not self.has_rate_systematic:
            return []
        sigma_theta = self.sigma_theta
        metadata = {"type": "rate", "log_normal": flag(True), "sigma_theta": repr(sigma_theta)}
        return [
            SystematicVariation(
                systematic_name=self.spec.rate_name,
                variation_label=label,
                histograms={b.key: self.nominal_histograms[b.key].scaled(np.exp(sign * sigma_theta)) for b in self.blocks},
                metadata=metadata,
            )
            for label, sign in (("pos", 1.0), ("neg", -1.0))
        ]


def _same_binning(template: TemplateSpec, hist: Histogram1D) -> bool:
    binning = hist.binning
    return (
        binning.n_bins == template.n_bins
        and np.isclose(binning.x_min, template.x_min)
        and np.isclose(binning.x_max, template.x_max)
    )


def read_nominals(
    store: TemplateStore, blocks: list[Block], templates: list[TemplateSpec]
) -> dict[tuple[str, str], Histogram1D]:
    """Read the nominal histogram of every block, checking that the binning matches the template."""
    templates_by_name = {t.name: t for t in templates}
    nominals = {}
    for block in blocks:
        hist = store.read_histogram(block.sample_name, block.template_name)
        if not _same_binning(templates_by_name[block.template_name], hist):
            msg = (
                f"Stored nominal '{block.sample_name}/{block.template_name}' has binning {hist.binning},"
                f" which doesn't match the template {templates_by_name[block.template_name].binning}"
            )
            raise DataAvailabilityError(msg, sample=block.sample_name, key=block.template_name)
        nominals[block.key] = hist
    return nominals


def _universe_count(spec: MultisimSpec, samples: list[Sample], engine: HistogramEngine) -> int:
    if spec.max_universes > 0:
        return spec.max_universes
    n_universes = engine.detect_universe_count(samples[0].events, spec.weight_vector_column)
    if n_universes <= 0:
        msg = f"Could not determine the number of universes from '{spec.weight_vector_column}'"
        raise DegenerateInputError(msg, sample=samples[0].name, key=spec.weight_vector_column)
    logger.info(f"Detected {n_universes} universes for '{spec.name}'")
    return n_universes


def _book_universes(
    sample: Sample,
    templates: list[TemplateSpec],
    spec: MultisimSpec,
    n_universes: int,
    engine: HistogramEngine,
) -> dict[str, PendingHistogram]:
    factors = engine.universe_factors(
        sample.events, spec.weight_vector_column, n_universes, spec.central_value_column
    )
    return {
        t.name: engine.book_universes(
            sample.events, t.selection, t.variable, t.weight_or(sample.nominal_weight), factors, t.binning
        )
        for t in templates
    }


def build_multisim_covariance(
    samples: list[Sample],
    templates: list[TemplateSpec],
    spec: MultisimSpec,
    engine: HistogramEngine,
    store: TemplateStore,
) -> MultisimCovariance:
    """Build the joint covariance of all samples and templates for one multisim systematic.

    Args:
        samples: Simulation samples to vary jointly.
        templates: Templates to vary.
        spec: Multisim systematic.
        engine: Histogram engine used to realise the universe histograms.
        store: Template store holding the nominal histograms.
    Returns:
        The covariance, along with what's needed to build variations from it.
    Raises:
        DegenerateInputError: If there is nothing to decompose.
        DataAvailabilityError: If a nominal histogram or weight column is missing.
    """
    try:
        return _build_multisim_covariance(samples, templates, spec, engine, store)
    except SystematicsError as e:
        e.with_context(systematic=spec.name)
        raise


def _build_multisim_covariance(
    samples: list[Sample],
    templates: list[TemplateSpec],
    spec: MultisimSpec,
    engine: HistogramEngine,
    store: TemplateStore,
) -> MultisimCovariance:
    if not samples or not templates:
        msg = f"Nothing to vary: {len(samples)} samples, {len(templates)} templates"
        raise DegenerateInputError(msg)

    n_universes = _universe_count(spec, samples, engine)
    blocks, length = make_blocks([s.name for s in samples], templates)
    nominal_histograms = read_nominals(store, blocks, templates)
    T0 = stack(blocks, {k: h.values for k, h in nominal_histograms.items()}, length)
    T0_norm = systematic_tools.dot(T0, T0)
    if T0_norm <= 0.0:
        msg = "Nominal stack has zero norm"
        raise DegenerateInputError(msg)
    logger.info(f"Multisim '{spec.name}': U={n_universes}, {len(blocks)} blocks, L={length}")

    # Book every universe of every sample, and realise them together
    bookings: dict[str, dict[str, PendingHistogram]] = {}
    for sample in samples:
        try:
            bookings[sample.name] = _book_universes(sample, templates, spec, n_universes, engine)
        except SystematicsError as e:
            e.with_context(sample=sample.name)
            raise
    engine.evaluate([p for per_sample in bookings.values() for p in per_sample.values()])
    universe_histograms = {b.key: bookings[b.sample_name][b.template_name].result for b in blocks}

    covariance = np.zeros((length, length), dtype=np.float64)
    thetas = []
    for u in range(n_universes):
        Tu = stack(blocks, {k: h.universe(u) for k, h in universe_histograms.items()}, length)  # type: ignore[union-attr]
        if spec.split_rate_shape:
            decomposition = systematic_tools.remove_global_rate(T0, Tu)
            if decomposition.scale > 0.0:
                thetas.append(np.log(decomposition.scale))
            else:
                logger.warning(
                    f"Multisim '{spec.name}' universe {u}: non-positive rate scale {decomposition.scale:.3g}, using theta = 0"
                )
                thetas.append(0.0)
            R = decomposition.residual
        else:
            R = T0 - Tu
        covariance += np.outer(R, R)
    covariance /= n_universes

    return MultisimCovariance(
        spec=spec,
        blocks=blocks,
        nominal_histograms=nominal_histograms,
        covariance=covariance,
        thetas=np.asarray(thetas, dtype=np.float64),
        n_universes=n_universes,
    )
