"""Numerical helpers for working with template variations.

These operate on stacked bin vectors (1D float arrays) and covariance matrices.
The multisim builder uses `dot`, `rms` and `remove_global_rate`. The remaining helpers
(`covariance_from_residuals`, `make_envelope`, `coverage`, `pseudo_inverse`, `chi2`)
are not used by the builders. They are for validating the stored variations downstream,
e.g. the envelope coverage of the universes by the eigenmodes, or the chi2 between a
variation and the nominal.
"""

from __future__ import annotations

import logging

import attrs
import numpy as np
import numpy.typing as npt
import scipy.linalg

logger = logging.getLogger(__name__)


def _as_vector(x: npt.ArrayLike) -> npt.NDArray[np.float64]:
    return np.asarray(x, dtype=np.float64).ravel()


def _check_same_size(a: npt.NDArray[np.float64], b: npt.NDArray[np.float64], what: str) -> None:
    if a.shape != b.shape:
        msg = f"{what}: size mismatch {a.size} vs {b.size}"
        raise ValueError(msg)


def dot(a: npt.ArrayLike, b: npt.ArrayLike) -> float:
    a, b = _as_vector(a), _as_vector(b)
    _check_same_size(a, b, "dot")
    return float(np.dot(a, b))


def rms(x: npt.ArrayLike) -> float:
    """Root mean square about zero. 0 for an empty input."""
    x = _as_vector(x)
    if x.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(x * x)))


@attrs.frozen(eq=False)
class RateResidual:
    """Decomposition of a varied vector into a global rate change and a shape residual.

    Attributes:
        alpha: Fractional rate change, T0.(Tu - T0) / T0.T0
        scale: 1 + alpha
        residual: Tu - scale * T0
    """

    alpha: float
    scale: float
    residual: npt.NDArray[np.float64]


def remove_global_rate(nominal: npt.ArrayLike, varied: npt.ArrayLike) -> RateResidual:
    """Remove the global rate shift of a varied vector with respect to the nominal.

    If the nominal is empty (zero norm), no projection is possible, so alpha = 0 and
    the residual is just the difference.

    Args:
        nominal: Nominal stacked vector T0.
        varied: Varied stacked vector Tu.
    Returns:
        The rate/shape decomposition.
    """
    nominal, varied = _as_vector(nominal), _as_vector(varied)
    _check_same_size(nominal, varied, "remove_global_rate")

    norm = float(np.dot(nominal, nominal))
    if norm <= 0.0:
        return RateResidual(alpha=0.0, scale=1.0, residual=varied - nominal)

    alpha = float(np.dot(nominal, varied - nominal)) / norm
    scale = 1.0 + alpha
    return RateResidual(alpha=alpha, scale=scale, residual=varied - scale * nominal)


def covariance_from_residuals(residuals: npt.ArrayLike) -> npt.NDArray[np.float64]:
    """V = (1/U) sum_u r_u r_u^T

    Args:
        residuals: Residual vectors, shape (U, L).
    Returns:
        Covariance matrix (L, L).
    """
    residuals = np.asarray(residuals, dtype=np.float64)
    if residuals.ndim != 2 or residuals.shape[0] == 0:
        msg = f"covariance_from_residuals: expected a non-empty (U, L) array, got shape {residuals.shape}"
        raise ValueError(msg)
    return residuals.T @ residuals / residuals.shape[0]


@attrs.frozen(eq=False)
class Envelope:
    lo: npt.NDArray[np.float64]
    hi: npt.NDArray[np.float64]


def make_envelope(vectors: npt.ArrayLike) -> Envelope:
    """Per bin minimum and maximum over a set of vectors."""
    vectors = np.asarray(vectors, dtype=np.float64)
    if vectors.ndim != 2 or vectors.shape[0] == 0:
        msg = f"make_envelope: expected a non-empty (n_vectors, L) array, got shape {vectors.shape}"
        raise ValueError(msg)
    return Envelope(lo=vectors.min(axis=0), hi=vectors.max(axis=0))


@attrs.frozen(eq=False)
class CoverageResult:
    """Coverage of a vector by an envelope.

    Attributes:
        coverage: Weighted fraction of bins inside the envelope.
        uncovered_weight: Weighted fraction of bins outside the envelope.
        uncovered_bins: 1-based indices of the bins outside the envelope.
    """

    coverage: float
    uncovered_weight: float
    uncovered_bins: list[int]


def coverage(
    x: npt.ArrayLike, envelope: Envelope, weights: npt.ArrayLike | None = None, tol: float = 0.0
) -> CoverageResult:
    """Fraction of bins of x which fall inside the envelope (within a tolerance).

    Args:
        x: Vector to check.
        envelope: Envelope to check against.
        weights: Per bin weights. Default: all 1.
        tol: Absolute tolerance added to both sides of the envelope. Default: 0.
    Returns:
        Coverage result. If the weights sum to <= 0, the coverage is 0.
    """
    x = _as_vector(x)
    _check_same_size(x, envelope.lo, "coverage (envelope lo)")
    _check_same_size(x, envelope.hi, "coverage (envelope hi)")
    w = np.ones_like(x) if weights is None else _as_vector(weights)
    _check_same_size(x, w, "coverage (weights)")

    inside = (x >= envelope.lo - tol) & (x <= envelope.hi + tol)
    uncovered_bins = [int(i) + 1 for i in np.flatnonzero(~inside)]
    w_sum = float(np.sum(w))
    if w_sum <= 0.0:
        return CoverageResult(coverage=0.0, uncovered_weight=0.0, uncovered_bins=uncovered_bins)
    fraction = float(np.sum(w[inside])) / w_sum
    return CoverageResult(coverage=fraction, uncovered_weight=1.0 - fraction, uncovered_bins=uncovered_bins)


def pseudo_inverse(matrix: npt.ArrayLike, rcond: float = 1e-12) -> npt.NDArray[np.float64]:
    """Moore-Penrose pseudo-inverse of a square matrix via SVD.

    Singular values <= rcond * max(singular values) are dropped.
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        msg = f"pseudo_inverse: matrix isn't square: {matrix.shape}"
        raise ValueError(msg)

    u, s, vh = scipy.linalg.svd(matrix)
    threshold = rcond * (s.max() if s.size else 0.0)
    s_inv = np.zeros_like(s)
    keep = s > threshold
    s_inv[keep] = 1.0 / s[keep]
    logger.debug(f"pseudo_inverse: kept {np.count_nonzero(keep)}/{s.size} singular values")
    # m = U S V^T => m^+ = V S^+ U^T
    return (vh.T * s_inv) @ u.T


def chi2(residual: npt.ArrayLike, inverse_covariance: npt.ArrayLike) -> float:
    """r^T V^-1 r"""
    r = _as_vector(residual)
    v_inv = np.asarray(inverse_covariance, dtype=np.float64)
    if v_inv.ndim != 2 or v_inv.shape[0] != v_inv.shape[1]:
        msg = f"chi2: inverse covariance isn't square: {v_inv.shape}"
        raise ValueError(msg)
    if v_inv.shape[0] != r.size:
        msg = f"chi2: size mismatch {r.size} vs {v_inv.shape[0]}"
        raise ValueError(msg)
    return float(r @ v_inv @ r)
