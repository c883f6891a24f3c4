"""Shared fixtures: synthetic event tables, templates and a temporary template store."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np
import pandas as pd
import pytest

from nuxsec.histogramming import Binning, Histogram1D, get_engine
from nuxsec.samples import Sample, SampleKind
from nuxsec.template_IO import TemplateStore
from nuxsec.template_spec import TemplateSpec


def vector_column(vectors: list[Any]) -> np.ndarray:
    """Object column holding one weight vector per event."""
    column = np.empty(len(vectors), dtype=object)
    for i, v in enumerate(vectors):
        column[i] = np.asarray(v)
    return column


@pytest.fixture
def engine():
    return get_engine("dataframe")


@pytest.fixture
def store(tmp_path):
    return TemplateStore(tmp_path / "templates.h5")


@pytest.fixture
def make_template() -> Callable[..., TemplateSpec]:
    def _make(
        name: str = "x_hist",
        selection: str = "",
        variable: str = "x",
        weight: str = "",
        n_bins: int = 2,
        x_min: float = 0.0,
        x_max: float = 2.0,
    ) -> TemplateSpec:
        return TemplateSpec(
            name=name,
            title=name,
            selection=selection,
            variable=variable,
            weight=weight,
            n_bins=n_bins,
            x_min=x_min,
            x_max=x_max,
        )

    return _make


@pytest.fixture
def make_sample() -> Callable[..., Sample]:
    def _make(name: str, events: dict[str, Any], kind: SampleKind = SampleKind.OVERLAY) -> Sample:
        return Sample(name=name, kind=kind, events=pd.DataFrame(events), beam_mode="numi", source_path=f"/data/{name}.root")

    return _make


@pytest.fixture
def two_block_setup(make_template, make_sample, store):
    """One sample and two 2-bin templates, whose stacked nominal is [10, 20, 5, 15].

    The two universes vary only the first template: [12, 18, 5, 15] and [8, 22, 5, 15].
    """
    templates = [make_template("a", variable="xa"), make_template("b", variable="xb")]
    events = {
        "xa": [0.5, 1.5, -1.0, -1.0],
        "xb": [-1.0, -1.0, 0.5, 1.5],
        "w_template": [10.0, 20.0, 5.0, 15.0],
        "weightsTest": vector_column([[1.2, 0.8], [0.9, 1.1], [1.0, 1.0], [1.0, 1.0]]),
    }
    sample = make_sample("overlay", events)
    binning = Binning(n_bins=2, x_min=0.0, x_max=2.0)
    store.write_histograms(
        "overlay",
        {
            "a": Histogram1D(values=[10.0, 20.0], errors=[1.0, 2.0], binning=binning),
            "b": Histogram1D(values=[5.0, 15.0], errors=[0.5, 1.5], binning=binning),
        },
    )
    return sample, templates
