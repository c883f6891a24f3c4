"""Template store: hierarchical HDF5 file holding nominal templates, their variations and metadata.

Layout of the store:

- nominal histogram: ``{sample}/hists/{template}``
- variation histogram: ``{sample}/systs/{systematic}/{variation}/hists/{template}``
- per-sample metadata: ``{sample}/meta/{key}``
- systematic-level metadata: ``__global__/meta/systs/{systematic}/{key}``
- global metadata: ``__global__/meta/{key}``

Each histogram is a group with the datasets ``y`` (contents), ``y_err`` (uncertainties)
and ``bin_edges``. Metadata values are strings. All writes are upserts. Before a systematic is
rewritten, the outputs of its previous run are removed via `remove_systematics`, so
nothing stale (e.g. eigenmodes which are no longer kept) survives a rerun.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import attrs
import h5py
import numpy as np
from silx.io.dictdump import dicttoh5, h5todict

from nuxsec.errors import DataAvailabilityError, StoreIOError
from nuxsec.histogramming.base import Binning, Histogram1D

logger = logging.getLogger(__name__)

GLOBAL_GROUP = "__global__"


def nominal_key(sample: str, template: str) -> str:
    return f"{sample}/hists/{template}"


def variation_key(sample: str, systematic: str, variation: str, template: str) -> str:
    return f"{sample}/systs/{systematic}/{variation}/hists/{template}"


def syst_meta_key(systematic: str) -> str:
    return f"{GLOBAL_GROUP}/meta/systs/{systematic}"


def _nest(key: str, value: Any) -> dict[str, Any]:
    """Convert a "/" separated key into a nested dict terminating in value."""
    tree: Any = value
    for part in reversed(key.split("/")):
        tree = {part: tree}
    return tree


def _histogram_to_dict(hist: Histogram1D) -> dict[str, np.ndarray]:
    return {
        "y": np.asarray(hist.values, dtype=np.float64),
        "y_err": np.asarray(hist.errors, dtype=np.float64),
        "bin_edges": hist.binning.edges,
    }


def _histogram_from_dict(values: dict[str, Any], key: str) -> Histogram1D:
    try:
        return Histogram1D(
            values=values["y"],
            errors=values["y_err"],
            binning=Binning.from_edges(values["bin_edges"]),
        )
    except KeyError as e:
        msg = f"Histogram at '{key}' is missing the dataset {e}"
        raise DataAvailabilityError(msg, key=key) from e


def _as_str(value: Any) -> str:
    value = np.asarray(value).item()
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _strings_from_dict(values: dict[str, Any]) -> dict[str, str]:
    return {k: _as_str(v) for k, v in values.items() if not isinstance(v, dict)}


@attrs.frozen(eq=False)
class SystematicVariation:
    """One variation of a systematic, which is the unit of output written to the store.

    Attributes:
        systematic_name: Name of the systematic (e.g. "ppfx_mode00").
        variation_label: "pos" or "neg".
        histograms: Varied histograms, keyed by (sample, template).
        metadata: Systematic-level metadata.
    """

    systematic_name: str
    variation_label: str
    histograms: dict[tuple[str, str], Histogram1D]
    metadata: dict[str, str] = attrs.field(factory=dict)

    @property
    def samples(self) -> list[str]:
        return list(dict.fromkeys(sample for sample, _ in self.histograms))


def flag(value: bool) -> str:
    """Boolean metadata are stored as "1" or "0"."""
    return "1" if value else "0"


@attrs.define
class TemplateStore:
    """Handle on a template store file.

    The file is opened for each read or write, so the handle is cheap to keep around.
    Only one systematic should be written at a time through a given store.

    Attributes:
        path: Path to the HDF5 file. It's created on the first write.
    """

    path: Path = attrs.field(converter=Path)

    ##########################
    # Low level access
    ##########################
    def _write(self, tree: dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            dicttoh5(tree, str(self.path), h5path="/", mode="a", update_mode="modify")
        except OSError as e:
            msg = f"Failed to write to template store {self.path}: {e}"
            raise StoreIOError(msg) from e

    def _read(self, key: str) -> dict[str, Any]:
        if not self.path.exists():
            msg = f"Template store {self.path} doesn't exist, so '{key}' is not available"
            raise DataAvailabilityError(msg, key=key)
        try:
            return h5todict(str(self.path), path=f"/{key}")
        except KeyError as e:
            msg = f"'{key}' is not available in template store {self.path}"
            raise DataAvailabilityError(msg, key=key) from e
        except OSError as e:
            msg = f"Failed to read template store {self.path}: {e}"
            raise StoreIOError(msg, key=key) from e

    ##########################
    # Histograms
    ##########################
    def write_histograms(self, sample: str, histograms: dict[str, Histogram1D]) -> None:
        """Write nominal histograms of a sample, keyed by template name."""
        tree = {sample: {"hists": {name: _histogram_to_dict(h) for name, h in histograms.items()}}}
        self._write(tree)
        logger.debug(f"Wrote {len(histograms)} nominal histograms for sample '{sample}'")

    def write_histogram(self, sample: str, template: str, hist: Histogram1D) -> None:
        self.write_histograms(sample, {template: hist})

    def read_histogram(self, sample: str, template: str) -> Histogram1D:
        key = nominal_key(sample, template)
        return _histogram_from_dict(self._read(key), key)

    def write_variation(
        self, sample: str, systematic: str, variation: str, histograms: dict[str, Histogram1D]
    ) -> None:
        """Write one variation (e.g. "pos" or "neg") of a systematic for every template of a sample."""
        tree = _nest(
            f"{sample}/systs/{systematic}/{variation}",
            {"hists": {name: _histogram_to_dict(h) for name, h in histograms.items()}},
        )
        self._write(tree)
        logger.debug(f"Wrote '{systematic}/{variation}' ({len(histograms)} templates) for sample '{sample}'")

    def read_variation(self, sample: str, systematic: str, variation: str, template: str) -> Histogram1D:
        key = variation_key(sample, systematic, variation, template)
        return _histogram_from_dict(self._read(key), key)

    def write_systematic_variations(self, variations: list[SystematicVariation]) -> None:
        """Write complete variations of a systematic, followed by their metadata."""
        for variation in variations:
            for sample in variation.samples:
                self.write_variation(
                    sample,
                    variation.systematic_name,
                    variation.variation_label,
                    {t: h for (s, t), h in variation.histograms.items() if s == sample},
                )
        for variation in variations:
            if variation.metadata:
                self.write_syst_meta(variation.systematic_name, variation.metadata)

    def list_systematics(self, sample: str) -> list[str]:
        """Names of the systematics stored for a sample (empty if there are none)."""
        try:
            systs = self._read(f"{sample}/systs")
        except DataAvailabilityError:
            return []
        return sorted(systs)

    def remove_systematics(self, matches: Callable[[str], bool]) -> list[str]:
        """Delete stored systematics from every sample, along with their systematic-level metadata.

        Args:
            matches: Selects the names of the systematics to delete.
        Returns:
            Names of the deleted systematics, sorted.
        """
        if not self.path.exists():
            return []

        removed = set()
        try:
            with h5py.File(self.path, "a") as f:
                parents = [f"{name}/systs" for name in f if name != GLOBAL_GROUP]
                parents.append(f"{GLOBAL_GROUP}/meta/systs")
                for parent_key in parents:
                    parent = f.get(parent_key)
                    if not isinstance(parent, h5py.Group):
                        continue
                    for name in [n for n in parent if matches(n)]:
                        del parent[name]
                        removed.add(name)
        except OSError as e:
            msg = f"Failed to remove systematics from template store {self.path}: {e}"
            raise StoreIOError(msg) from e

        if removed:
            logger.info(f"Removed previous outputs {sorted(removed)} from {self.path}")
        return sorted(removed)

    ##########################
    # Metadata
    ##########################
    def write_sample_meta(self, sample: str, metadata: dict[str, str]) -> None:
        self._write({sample: {"meta": {k: str(v) for k, v in metadata.items()}}})

    def read_sample_meta(self, sample: str) -> dict[str, str]:
        return _strings_from_dict(self._read(f"{sample}/meta"))

    def write_syst_meta(self, systematic: str, metadata: dict[str, str]) -> None:
        self._write(_nest(syst_meta_key(systematic), {k: str(v) for k, v in metadata.items()}))

    def read_syst_meta(self, systematic: str) -> dict[str, str]:
        return _strings_from_dict(self._read(syst_meta_key(systematic)))

    def write_global_meta(self, metadata: dict[str, str]) -> None:
        self._write({GLOBAL_GROUP: {"meta": {k: str(v) for k, v in metadata.items()}}})

    def read_global_meta(self) -> dict[str, str]:
        """Global string metadata. Systematic-level metadata is read via `read_syst_meta`."""
        return _strings_from_dict(self._read(f"{GLOBAL_GROUP}/meta"))
