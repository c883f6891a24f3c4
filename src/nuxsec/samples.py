"""Samples: categorised event tables, and the list of samples for an analysis.

The sample list is a tab separated table with one sample per row:

    # sample_name  sample_kind  beam_mode  output_path
    numi_fhc_overlay  overlay  numi  /data/numi_fhc_overlay.root

Only simulation samples (overlay, dirt, strangeness) are varied by the systematics
builders. Which of them are included is controlled by a `SampleFilter`.
"""

from __future__ import annotations

import enum
import logging
from pathlib import Path

import attrs
import pandas as pd
import uproot

from nuxsec.errors import ConfigurationError, DataAvailabilityError

logger = logging.getLogger(__name__)

DEFAULT_NOMINAL_WEIGHT = "w_template"

_N_COLUMNS = 4
_HEADER_NAMES = ("sample_name", "sample", "name")


class SampleKind(enum.Enum):
    DATA = "data"
    EXT = "ext"
    OVERLAY = "mc_overlay"
    DIRT = "mc_dirt"
    STRANGENESS = "mc_strangeness"
    UNKNOWN = "unknown"

    @property
    def is_simulation(self) -> bool:
        return self in (SampleKind.OVERLAY, SampleKind.DIRT, SampleKind.STRANGENESS)


_KIND_ALIASES = {
    "data": SampleKind.DATA,
    "ext": SampleKind.EXT,
    "overlay": SampleKind.OVERLAY,
    "dirt": SampleKind.DIRT,
    "strangeness": SampleKind.STRANGENESS,
}


def parse_sample_kind(name: str) -> SampleKind:
    """Parse a sample kind, case insensitive. Both "overlay" and "mc_overlay" are accepted.

    Unrecognised names are `SampleKind.UNKNOWN`.
    """
    lowered = name.strip().lower()
    if lowered in _KIND_ALIASES:
        return _KIND_ALIASES[lowered]
    try:
        return SampleKind(lowered)
    except ValueError:
        return SampleKind.UNKNOWN


@attrs.frozen
class SampleFilter:
    """Which simulation samples are varied. Data, EXT and unknown samples are never varied."""

    include_overlay: bool = True
    include_dirt: bool = True
    include_strangeness: bool = True

    def accepts(self, kind: SampleKind) -> bool:
        if not kind.is_simulation:
            return False
        return {
            SampleKind.OVERLAY: self.include_overlay,
            SampleKind.DIRT: self.include_dirt,
            SampleKind.STRANGENESS: self.include_strangeness,
        }.get(kind, False)


@attrs.frozen
class SampleListEntry:
    name: str
    kind: SampleKind
    beam_mode: str
    path: Path = attrs.field(converter=Path)


@attrs.define(eq=False)
class Sample:
    """A categorised event table.

    Attributes:
        name: Name of the sample. Used as the top level key in the template store.
        kind: Category of the sample.
        events: Event table. Columns hold per-event scalars, or per-event arrays for weight vectors.
        nominal_weight: Column (or expression) with the nominal per-event weight.
        beam_mode: Beam mode label (e.g. "numi" or "bnb").
        source_path: Where the events were read from.
    """

    name: str
    kind: SampleKind
    events: pd.DataFrame
    nominal_weight: str = DEFAULT_NOMINAL_WEIGHT
    beam_mode: str = "unknown"
    source_path: str = ""


def read_sample_list(path: Path | str) -> list[SampleListEntry]:
    """Parse a tab separated sample list.

    Args:
        path: Path to the sample list.
    Returns:
        Sample list entries, in file order.
    Raises:
        ConfigurationError: If the file can't be read, a row has fewer than 4 columns,
            a sample kind is unknown, or no samples are found.
    """
    path = Path(path)
    try:
        lines = path.read_text().splitlines()
    except OSError as e:
        msg = f"Failed to open sample list {path}"
        raise ConfigurationError(msg, key=str(path)) from e

    entries: list[SampleListEntry] = []
    first_row = True
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        cells = [c.strip() for c in line.split("\t")]
        if len(cells) < _N_COLUMNS:
            msg = f"Expected >= {_N_COLUMNS} tab separated columns, got {len(cells)} in line: '{line}'"
            raise ConfigurationError(msg, key=str(path))
        if first_row and cells[0] in _HEADER_NAMES:
            first_row = False
            continue
        first_row = False

        name, kind_name, beam_mode, output_path = cells[:4]
        if not name or "/" in name:
            msg = f"Invalid sample name '{name}' (must be non-empty and free of '/')"
            raise ConfigurationError(msg, key=str(path))
        kind = parse_sample_kind(kind_name)
        if kind == SampleKind.UNKNOWN and kind_name.lower() != SampleKind.UNKNOWN.value:
            msg = f"Unknown sample kind '{kind_name}' for sample '{name}'"
            raise ConfigurationError(msg, sample=name, key=str(path))
        entries.append(SampleListEntry(name=name, kind=kind, beam_mode=beam_mode.lower(), path=output_path))

    if not entries:
        msg = f"No samples read from {path}"
        raise ConfigurationError(msg, key=str(path))
    names = [e.name for e in entries]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        msg = f"Duplicate sample names in {path}: {duplicates}"
        raise ConfigurationError(msg, key=str(path))
    logger.info(f"Read {len(entries)} samples from {path}")
    return entries


def load_sample(
    entry: SampleListEntry,
    tree_name: str,
    branches: list[str] | None = None,
    nominal_weight: str = DEFAULT_NOMINAL_WEIGHT,
) -> Sample:
    """Load a sample's event tree into a DataFrame.

    Args:
        entry: Sample list entry.
        tree_name: Name of the event tree in the file.
        branches: Branches to read. Default: all of them.
        nominal_weight: Column with the nominal per-event weight.
    Returns:
        The sample.
    """
    logger.info(f"Loading sample '{entry.name}' ({entry.kind.value}) from {entry.path}:{tree_name}")
    try:
        with uproot.open(entry.path) as f:
            tree = f[tree_name]
            arrays = tree.arrays(filter_name=branches, library="np")
    except KeyError as e:
        msg = f"Tree '{tree_name}' (or a requested branch) not found in {entry.path}"
        raise DataAvailabilityError(msg, sample=entry.name, key=tree_name) from e
    except OSError as e:
        msg = f"Failed to read sample file {entry.path}: {e}"
        raise DataAvailabilityError(msg, sample=entry.name, key=str(entry.path)) from e

    events = pd.DataFrame(dict(arrays))
    logger.info(f"Loaded {len(events)} events with {len(events.columns)} columns for '{entry.name}'")
    return Sample(
        name=entry.name,
        kind=entry.kind,
        events=events,
        nominal_weight=nominal_weight,
        beam_mode=entry.beam_mode,
        source_path=str(entry.path),
    )
