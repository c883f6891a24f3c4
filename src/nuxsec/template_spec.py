"""Template catalogue: the ordered list of 1D templates booked for an analysis.

The catalogue is a tab separated table with one template per row:

    # name  title  selection  variable  weight  bin_count  x_min  x_max
    muon_p  Muon momentum  sel_muon  muon_p  w_template  20  0.0  2.0

Lines starting with '#' and blank lines are skipped. A leading header row
(first cell ``name`` or ``template_name``) is skipped as well. Selections,
variables and weights are expressions over the event table (see
`nuxsec.histogramming`). An empty weight means "use the nominal per-event
weight of the sample".
"""

from __future__ import annotations

import logging
from pathlib import Path

import attrs

from nuxsec.errors import ConfigurationError
from nuxsec.histogramming.base import Binning

logger = logging.getLogger(__name__)

_N_COLUMNS = 8
_HEADER_NAMES = ("name", "template_name")


@attrs.frozen
class TemplateSpec:
    name: str
    title: str
    selection: str
    variable: str
    weight: str
    n_bins: int
    x_min: float
    x_max: float

    @property
    def binning(self) -> Binning:
        return Binning(n_bins=self.n_bins, x_min=self.x_min, x_max=self.x_max)

    def weight_or(self, nominal_weight: str) -> str:
        """Weight expression, falling back to the provided nominal weight."""
        return self.weight if self.weight else nominal_weight


def _split_tabs(line: str) -> list[str]:
    return [cell.strip() for cell in line.split("\t")]


def _parse_row(cells: list[str], line: str) -> TemplateSpec:
    name, title, selection, variable, weight = cells[:5]
    try:
        n_bins = int(cells[5])
        x_min = float(cells[6])
        x_max = float(cells[7])
    except ValueError as e:
        msg = f"Bad numeric fields in template line: '{line}'"
        raise ConfigurationError(msg) from e

    if not name:
        msg = f"Empty template name in line: '{line}'"
        raise ConfigurationError(msg)
    if "/" in name:
        msg = f"Template name '{name}' cannot contain '/' (it is used as a template store key)"
        raise ConfigurationError(msg)
    if n_bins < 1:
        msg = f"Template '{name}' must have at least one bin, got {n_bins}"
        raise ConfigurationError(msg)
    if not x_max > x_min:
        msg = f"Template '{name}' has an empty range: x_min={x_min}, x_max={x_max}"
        raise ConfigurationError(msg)

    return TemplateSpec(
        name=name,
        title=title if title else name,
        selection=selection,
        variable=variable,
        weight=weight,
        n_bins=n_bins,
        x_min=x_min,
        x_max=x_max,
    )


def read_template_spec_tsv(path: Path | str) -> list[TemplateSpec]:
    """Parse a tab separated template catalogue.

    Args:
        path: Path to the catalogue.
    Returns:
        Template specifications, in file order.
    Raises:
        ConfigurationError: If the file can't be read, a row has fewer than 8 columns,
            a numeric field is malformed, or no templates are found.
    """
    path = Path(path)
    try:
        lines = path.read_text().splitlines()
    except OSError as e:
        msg = f"Failed to open template catalogue {path}"
        raise ConfigurationError(msg, key=str(path)) from e

    specs: list[TemplateSpec] = []
    first_row = True
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        cells = _split_tabs(line)
        if len(cells) < _N_COLUMNS:
            msg = f"Expected >= {_N_COLUMNS} tab separated columns, got {len(cells)} in line: '{line}'"
            raise ConfigurationError(msg, key=str(path))

        if first_row and cells[0] in _HEADER_NAMES:
            first_row = False
            continue
        first_row = False

        specs.append(_parse_row(cells, line))

    if not specs:
        msg = f"No templates read from {path}"
        raise ConfigurationError(msg, key=str(path))

    names = [s.name for s in specs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        msg = f"Duplicate template names in {path}: {duplicates}"
        raise ConfigurationError(msg, key=str(path))

    logger.info(f"Read {len(specs)} templates from {path}")
    return specs
