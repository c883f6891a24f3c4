"""Eigenmode selection: reduce a multisim covariance to a few symmetric up/down variations.

The covariance is decomposed as V = sum_k lambda_k v_k v_k^T. Modes are ordered by
decreasing eigenvalue (ties by index), and kept until either `max_modes` are selected
or the cumulative fraction of the total (positive) variance reaches `keep_fraction`.
Each kept mode m gives

    up = nominal + sqrt(lambda_m) v_m
    down = nominal - sqrt(lambda_m) v_m

split back into the (sample, template) blocks of the stacked vector. The nominal
statistical uncertainties are carried unchanged onto both variations.
"""

from __future__ import annotations

import logging

import attrs
import numpy as np
import numpy.typing as npt
import scipy.linalg

from nuxsec.multisim import MultisimCovariance
from nuxsec.template_IO import SystematicVariation

logger = logging.getLogger(__name__)


@attrs.frozen(eq=False)
class Eigenmode:
    index: int
    eigenvalue: float
    eigenvector: npt.NDArray[np.float64]

    @property
    def stdev(self) -> float:
        return float(np.sqrt(max(self.eigenvalue, 0.0)))


def decompose(covariance: npt.NDArray[np.float64]) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Eigen-decomposition of a symmetric matrix, ordered by decreasing eigenvalue.

    Ties keep their original (ascending index) order. The sign of each eigenvector is
    fixed so that its largest magnitude component is positive.

    Args:
        covariance: Symmetric matrix. Only the lower triangle is used.
    Returns:
        Eigenvalues (L,), eigenvectors as columns (L, L).
    """
    eigenvalues, eigenvectors = scipy.linalg.eigh(np.asarray(covariance, dtype=np.float64), lower=True)
    order = np.argsort(-eigenvalues, kind="stable")
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]

    if eigenvectors.size:
        largest = np.argmax(np.abs(eigenvectors), axis=0)
        signs = np.where(eigenvectors[largest, np.arange(eigenvectors.shape[1])] < 0, -1.0, 1.0)
        eigenvectors = eigenvectors * signs
    return eigenvalues, eigenvectors


def select_mode_count(eigenvalues: npt.NDArray[np.float64], max_modes: int, keep_fraction: float) -> int:
    """Number of modes to keep, given eigenvalues sorted in decreasing order.

    Non-positive eigenvalues are never kept. If the total positive variance is zero,
    no modes are kept.
    """
    eigenvalues = np.asarray(eigenvalues, dtype=np.float64)
    total_variance = float(np.sum(eigenvalues[eigenvalues > 0.0]))
    if total_variance <= 0.0:
        return 0

    n_modes = 0
    cumulative = 0.0
    for eigenvalue in eigenvalues:
        if eigenvalue <= 0.0:
            continue
        cumulative += eigenvalue
        n_modes += 1
        if n_modes >= max_modes or cumulative / total_variance >= keep_fraction:
            break
    return n_modes


def select_eigenmodes(covariance: npt.NDArray[np.float64], max_modes: int, keep_fraction: float) -> list[Eigenmode]:
    eigenvalues, eigenvectors = decompose(covariance)
    n_modes = select_mode_count(eigenvalues, max_modes=max_modes, keep_fraction=keep_fraction)
    if n_modes:
        kept = float(np.sum(eigenvalues[:n_modes]) / np.sum(eigenvalues[eigenvalues > 0.0]))
        logger.info(f"Keeping {n_modes} eigenmodes, explaining {kept:.4f} of the variance")
    else:
        logger.info("No positive variance, so no eigenmodes are kept")
    # Positive eigenvalues come first, so the kept modes are the leading ones.
    return [
        Eigenmode(index=m, eigenvalue=float(eigenvalues[m]), eigenvector=eigenvectors[:, m]) for m in range(n_modes)
    ]


def explained_variance_fraction(eigenvalues: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """Cumulative fraction of the total positive variance, for eigenvalues in decreasing order."""
    positive = np.clip(np.asarray(eigenvalues, dtype=np.float64), 0.0, None)
    total = np.sum(positive)
    if total <= 0.0:
        return np.zeros_like(positive)
    return np.cumsum(positive) / total


def reconstruct_covariance(
    eigenvalues: npt.NDArray[np.float64], eigenvectors: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    """V = sum_k lambda_k v_k v_k^T"""
    return (eigenvectors * eigenvalues) @ eigenvectors.T


def multisim_metadata(n_universes: int, n_modes: int) -> dict[str, str]:
    return {"type": "multisim_eigen", "nuniv": str(n_universes), "nmodes": str(n_modes)}


def eigenmode_variations(
    result: MultisimCovariance, modes: list[Eigenmode], clamp_negative_bins: bool = True
) -> list[list[SystematicVariation]]:
    """Up ("pos") and down ("neg") variations for each selected mode.

    Args:
        result: Multisim covariance result.
        modes: Selected eigenmodes.
        clamp_negative_bins: Clamp negative bins of the variations (never the nominal) to 0.
    Returns:
        For each mode, its [pos, neg] variations.
    """
    spec = result.spec
    output = []
    for mode in modes:
        delta = mode.stdev * mode.eigenvector
        name = spec.mode_name(mode.index)
        metadata = {"type": "eigenmode", "parent": spec.name}
        up, down = {}, {}
        for block in result.blocks:
            nominal = result.nominal_histograms[block.key]
            up[block.key] = nominal.with_values(nominal.values + delta[block.slice])
            down[block.key] = nominal.with_values(nominal.values - delta[block.slice])
            if clamp_negative_bins:
                up[block.key] = up[block.key].clamped_non_negative()
                down[block.key] = down[block.key].clamped_non_negative()
        output.append(
            [
                SystematicVariation(systematic_name=name, variation_label="pos", histograms=up, metadata=metadata),
                SystematicVariation(systematic_name=name, variation_label="neg", histograms=down, metadata=metadata),
            ]
        )
    return output
