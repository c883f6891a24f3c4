"""Value types and the engine interface for weighted, filtered 1D binning.

This is **NOT** a histogramming library. It is the narrow interface which the
systematics builders need from a columnar backend:

- book a weighted histogram of a variable under a selection (`book`),
- book one histogram replayed over many universes of weights (`book_universes`),
- realise a whole batch of bookings at once (`evaluate`).

The builders never evaluate a single histogram at a time. The dominant cost is
scanning the event table, so bookings are accumulated and submitted together.
Backends register themselves in `nuxsec.histogramming.interface`.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import attrs
import numpy as np
import numpy.typing as npt

logger = logging.getLogger(__name__)


def _as_float_array(values: Any) -> npt.NDArray[np.float64]:
    return np.array(values, dtype=np.float64, copy=True)


@attrs.frozen
class Binning:
    """Uniform binning on [x_min, x_max).

    Bin assignment follows the ROOT convention: x == x_max is overflow. Under/overflow
    and non-finite values are dropped.
    """

    n_bins: int
    x_min: float
    x_max: float

    @property
    def edges(self) -> npt.NDArray[np.float64]:
        return np.linspace(self.x_min, self.x_max, self.n_bins + 1)

    def bin_indices(self, x: npt.NDArray[np.float64]) -> tuple[npt.NDArray[np.int64], npt.NDArray[np.bool_]]:
        """Find the bin of each value.

        Args:
            x: Values to bin.
        Returns:
            (bin index of each in-range value, mask of which values are in range).
        """
        x = np.asarray(x, dtype=np.float64)
        in_range = np.isfinite(x) & (x >= self.x_min) & (x < self.x_max)
        scale = self.n_bins / (self.x_max - self.x_min)
        indices = np.floor((x[in_range] - self.x_min) * scale).astype(np.int64)
        # Rounding can push values just below x_max into the overflow
        np.clip(indices, 0, self.n_bins - 1, out=indices)
        return indices, in_range

    @classmethod
    def from_edges(cls, edges: npt.NDArray[np.float64]) -> Binning:
        edges = np.asarray(edges, dtype=np.float64)
        return cls(n_bins=len(edges) - 1, x_min=float(edges[0]), x_max=float(edges[-1]))


@attrs.frozen(eq=False)
class Histogram1D:
    """Binned content of one template, owned by whoever produced it.

    Attributes:
        values: Bin contents (n_bins,).
        errors: Bin uncertainties, sqrt(sum w^2) (n_bins,).
        binning: Binning of the histogram.
    """

    values: npt.NDArray[np.float64] = attrs.field(converter=_as_float_array)
    errors: npt.NDArray[np.float64] = attrs.field(converter=_as_float_array)
    binning: Binning

    def __attrs_post_init__(self) -> None:
        expected = (self.binning.n_bins,)
        if self.values.shape != expected or self.errors.shape != expected:
            msg = f"Histogram shape mismatch: values {self.values.shape}, errors {self.errors.shape}, binning {expected}"
            raise ValueError(msg)

    def scaled(self, factor: float) -> Histogram1D:
        return Histogram1D(values=self.values * factor, errors=self.errors * abs(factor), binning=self.binning)

    def with_values(self, values: npt.NDArray[np.float64]) -> Histogram1D:
        """Replace the contents, keeping the uncertainties."""
        return Histogram1D(values=values, errors=self.errors, binning=self.binning)

    def clamped_non_negative(self) -> Histogram1D:
        return self.with_values(np.where(self.values < 0.0, 0.0, self.values))


@attrs.frozen(eq=False)
class UniverseHistograms:
    """One booking replayed over U universes of weights.

    Attributes:
        values: Bin contents per universe (n_universes, n_bins).
        binning: Binning shared by all universes.
    """

    values: npt.NDArray[np.float64] = attrs.field(converter=_as_float_array)
    binning: Binning

    @property
    def n_universes(self) -> int:
        return int(self.values.shape[0])

    def universe(self, u: int) -> npt.NDArray[np.float64]:
        return self.values[u]


@attrs.define(eq=False)
class PendingHistogram:
    """Booked, but not necessarily realised, histogram.

    The result is only available after the batch containing this booking is evaluated.
    """

    table: Any
    selection: str
    variable: str
    weight: str | npt.NDArray[np.float64]
    binning: Binning
    factors: npt.NDArray[np.float64] | None = None
    _result: Histogram1D | UniverseHistograms | None = attrs.field(init=False, default=None)

    @property
    def ready(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> Histogram1D | UniverseHistograms:
        if self._result is None:
            msg = f"Histogram of '{self.variable}' was booked but its batch hasn't been evaluated yet"
            raise RuntimeError(msg)
        return self._result

    def set_result(self, result: Histogram1D | UniverseHistograms) -> None:
        self._result = result


@runtime_checkable
class HistogramEngine(Protocol):
    """Histogram engine protocol

    Tables are opaque to the builders: everything they need to know about a table
    goes through the engine.
    """

    thread_count: int

    def book(
        self,
        table: Any,
        selection: str,
        variable: str,
        weight: str | npt.NDArray[np.float64],
        binning: Binning,
    ) -> PendingHistogram: ...

    def book_universes(
        self,
        table: Any,
        selection: str,
        variable: str,
        weight: str | npt.NDArray[np.float64],
        factors: npt.NDArray[np.float64],
        binning: Binning,
    ) -> PendingHistogram: ...

    def evaluate(self, pending: list[PendingHistogram]) -> None: ...

    def column_values(self, table: Any, expression: str) -> npt.NDArray[np.float64]: ...

    def has_column(self, table: Any, column: str) -> bool: ...

    def detect_universe_count(self, table: Any, vector_column: str) -> int: ...

    def universe_factors(
        self,
        table: Any,
        vector_column: str,
        n_universes: int,
        central_value_column: str | None = None,
    ) -> npt.NDArray[np.float64]: ...
