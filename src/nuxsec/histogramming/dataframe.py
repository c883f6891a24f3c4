"""Histogram engine backed by pandas DataFrame event tables.

Selections, variables and weights are expressions understood by `DataFrame.eval`
(a bare column name is looked up directly). Binning is done with `np.bincount`.

Within a batch, bookings on the same table which share a selection, variable
and binning share one evaluation of the selection mask and of the bin
assignment. Different tables are independent and are evaluated concurrently
when `thread_count > 1`.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import attrs
import numpy as np
import numpy.typing as npt
import pandas as pd

from nuxsec.errors import ConfigurationError, DataAvailabilityError
from nuxsec.histogramming import base

logger = logging.getLogger(__name__)

_register_name = "dataframe"

# ushort weight vectors store the weight in units of 1/1000
_PACKED_WEIGHT_SCALE = 0.001


def _decode_weight_vector(vector: Any) -> npt.NDArray[np.float64]:
    vector = np.atleast_1d(np.asarray(vector))
    if vector.dtype == np.uint16:
        return vector.astype(np.float64) * _PACKED_WEIGHT_SCALE
    return vector.astype(np.float64)


@attrs.define
class _Pass:
    """Shared selection and bin assignment of a group of bookings."""

    mask: npt.NDArray[np.bool_]
    indices: npt.NDArray[np.int64]
    in_range: npt.NDArray[np.bool_]


@attrs.define
class DataFrameHistogramEngine:
    """Histogram engine over pandas DataFrames.

    Attributes:
        thread_count: Number of tables evaluated concurrently within a batch.
        n_passes: Number of shared selection/binning passes done so far. Useful for
            checking that batching works as expected.
    """

    thread_count: int = 1
    n_passes: int = attrs.field(init=False, default=0)

    ##########################
    # Column access
    ##########################
    def has_column(self, table: pd.DataFrame, column: str) -> bool:
        return column in table.columns

    def column_values(self, table: pd.DataFrame, expression: str) -> npt.NDArray[Any]:
        """Evaluate an expression over every event of the table.

        Args:
            table: Event table.
            expression: Column name or `DataFrame.eval` expression.
        Returns:
            One value per event.
        """
        if expression in table.columns:
            return table[expression].to_numpy()
        try:
            values = table.eval(expression)
        except (NameError, KeyError) as e:
            msg = f"Expression '{expression}' refers to a column which isn't available: {e}"
            raise DataAvailabilityError(msg, key=expression) from e
        except (SyntaxError, ValueError, TypeError) as e:
            msg = f"Unable to evaluate expression '{expression}': {e}"
            raise ConfigurationError(msg, key=expression) from e

        if np.ndim(values) == 0:
            return np.full(len(table), values)
        return np.asarray(values)

    def _selection_mask(self, table: pd.DataFrame, selection: str) -> npt.NDArray[np.bool_]:
        if not selection.strip():
            return np.ones(len(table), dtype=bool)
        return np.asarray(self.column_values(table, selection)).astype(bool)

    def _weights(self, table: pd.DataFrame, weight: str | npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        if isinstance(weight, str):
            return np.asarray(self.column_values(table, weight), dtype=np.float64)
        weight = np.asarray(weight, dtype=np.float64)
        if weight.shape != (len(table),):
            msg = f"Weight array shape {weight.shape} doesn't match the number of events ({len(table)})"
            raise ValueError(msg)
        return weight

    ##########################
    # Universes
    ##########################
    def detect_universe_count(self, table: pd.DataFrame, vector_column: str) -> int:
        """Length of the weight vector on the first event (0 for an empty table)."""
        if not self.has_column(table, vector_column):
            msg = f"Weight vector column '{vector_column}' is not available"
            raise DataAvailabilityError(msg, key=vector_column)
        if len(table) == 0:
            return 0
        return int(_decode_weight_vector(table[vector_column].iloc[0]).size)

    def universe_factors(
        self,
        table: pd.DataFrame,
        vector_column: str,
        n_universes: int,
        central_value_column: str | None = None,
    ) -> npt.NDArray[np.float64]:
        """Per event, per universe weight factors.

        factor[i, u] = w_u(event i) / cv(event i). A central value <= 0 is treated as 1,
        and an event whose vector is shorter than u+1 gets a factor of 1.

        Args:
            table: Event table.
            vector_column: Column holding the per-event weight vectors.
            n_universes: Number of universes U.
            central_value_column: Column with the central value weight, if any.
        Returns:
            Factors, shape (n_events, U).
        """
        if not self.has_column(table, vector_column):
            msg = f"Weight vector column '{vector_column}' is not available"
            raise DataAvailabilityError(msg, key=vector_column)

        n_events = len(table)
        denominators = np.ones(n_events, dtype=np.float64)
        if central_value_column:
            if not self.has_column(table, central_value_column):
                msg = f"Central value column '{central_value_column}' is not available"
                raise DataAvailabilityError(msg, key=central_value_column)
            cv = np.asarray(table[central_value_column].to_numpy(), dtype=np.float64)
            denominators = np.where(cv > 0, cv, 1.0)

        factors = np.ones((n_events, n_universes), dtype=np.float64)
        for i, vector in enumerate(table[vector_column].to_numpy()):
            decoded = _decode_weight_vector(vector)
            n = min(decoded.size, n_universes)
            factors[i, :n] = decoded[:n] / denominators[i]
        return factors

    ##########################
    # Booking and evaluation
    ##########################
    def book(
        self,
        table: pd.DataFrame,
        selection: str,
        variable: str,
        weight: str | npt.NDArray[np.float64],
        binning: base.Binning,
    ) -> base.PendingHistogram:
        return base.PendingHistogram(
            table=table, selection=selection, variable=variable, weight=weight, binning=binning
        )

    def book_universes(
        self,
        table: pd.DataFrame,
        selection: str,
        variable: str,
        weight: str | npt.NDArray[np.float64],
        factors: npt.NDArray[np.float64],
        binning: base.Binning,
    ) -> base.PendingHistogram:
        factors = np.asarray(factors, dtype=np.float64)
        if factors.ndim != 2 or factors.shape[0] != len(table):
            msg = f"Universe factors must have shape (n_events={len(table)}, U), got {factors.shape}"
            raise ValueError(msg)
        return base.PendingHistogram(
            table=table, selection=selection, variable=variable, weight=weight, binning=binning, factors=factors
        )

    def evaluate(self, pending: list[base.PendingHistogram]) -> None:
        """Realise a batch of bookings.

        Args:
            pending: Bookings to realise. Already realised bookings are skipped.
        Returns:
            None. The results are available through each booking.
        """
        by_table: dict[int, tuple[pd.DataFrame, list[base.PendingHistogram]]] = {}
        for booking in pending:
            if booking.ready:
                continue
            by_table.setdefault(id(booking.table), (booking.table, []))[1].append(booking)
        if not by_table:
            return

        groups = list(by_table.values())
        logger.debug(f"Evaluating {sum(len(g[1]) for g in groups)} bookings over {len(groups)} table(s)")
        if self.thread_count > 1 and len(groups) > 1:
            with ThreadPoolExecutor(max_workers=self.thread_count) as executor:
                n_passes = list(executor.map(lambda g: self._evaluate_table(*g), groups))
        else:
            n_passes = [self._evaluate_table(table, bookings) for table, bookings in groups]
        self.n_passes += sum(n_passes)

    def _evaluate_table(self, table: pd.DataFrame, bookings: list[base.PendingHistogram]) -> int:
        """Evaluate all bookings of one table. Returns the number of shared passes."""
        masks: dict[str, npt.NDArray[np.bool_]] = {}
        passes: dict[Hashable, _Pass] = {}
        weights: dict[str, npt.NDArray[np.float64]] = {}

        for booking in bookings:
            key = (booking.selection, booking.variable, booking.binning)
            shared = passes.get(key)
            if shared is None:
                if booking.selection not in masks:
                    masks[booking.selection] = self._selection_mask(table, booking.selection)
                mask = masks[booking.selection]
                x = np.asarray(self.column_values(table, booking.variable), dtype=np.float64)[mask]
                indices, in_range = booking.binning.bin_indices(x)
                shared = _Pass(mask=mask, indices=indices, in_range=in_range)
                passes[key] = shared

            if isinstance(booking.weight, str):
                if booking.weight not in weights:
                    weights[booking.weight] = self._weights(table, booking.weight)
                w = weights[booking.weight]
            else:
                w = self._weights(table, booking.weight)
            w = w[shared.mask][shared.in_range]

            n_bins = booking.binning.n_bins
            if booking.factors is None:
                values = np.bincount(shared.indices, weights=w, minlength=n_bins)
                sumw2 = np.bincount(shared.indices, weights=w * w, minlength=n_bins)
                booking.set_result(base.Histogram1D(values=values, errors=np.sqrt(sumw2), binning=booking.binning))
            else:
                universe_weights = w[:, np.newaxis] * booking.factors[shared.mask][shared.in_range]
                n_universes = universe_weights.shape[1]
                # Flatten to a single bincount: entry (i, u) goes to bin indices[i] + u * n_bins
                flat_indices = (shared.indices[:, np.newaxis] + n_bins * np.arange(n_universes)).ravel()
                values = np.bincount(flat_indices, weights=universe_weights.ravel(), minlength=n_universes * n_bins)
                booking.set_result(
                    base.UniverseHistograms(values=values.reshape(n_universes, n_bins), binning=booking.binning)
                )

        return len(passes)


Engine = DataFrameHistogramEngine
