"""Histogramming for the systematics builders.

The builders describe the histograms they need through a `HistogramEngine`:
bookings are accumulated with `book()` / `book_universes()` and realised as a
batch with `evaluate()`. Backends are registered by name, and the engine is
usually constructed via `get_engine()`.

For further information, see the documentation in `histogramming.base`
"""

from __future__ import annotations

from nuxsec.histogramming.base import (  # noqa: F401
    Binning,
    Histogram1D,
    HistogramEngine,
    PendingHistogram,
    UniverseHistograms,
)
from nuxsec.histogramming.interface import (  # noqa: F401
    available_engines,
    get_engine,
)
