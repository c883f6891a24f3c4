"""Tests for eigenmode selection and the eigenmode variations."""

import numpy as np
import pytest

from nuxsec import eigenmodes, multisim
from nuxsec.histogramming import Binning, Histogram1D
from nuxsec.systematics_config import MultisimSpec
from nuxsec.template_spec import TemplateSpec


def _random_covariance(size, seed=42):
    rng = np.random.default_rng(seed)
    residuals = rng.normal(size=(3 * size, size))
    return residuals.T @ residuals / (3 * size)


def _covariance_result(covariance, nominal_values, errors=None, name="flux"):
    binning = Binning(len(nominal_values), 0.0, float(len(nominal_values)))
    errors = np.zeros(len(nominal_values)) if errors is None else errors
    template = TemplateSpec(
        name="t", title="t", selection="", variable="x", weight="", n_bins=binning.n_bins, x_min=binning.x_min, x_max=binning.x_max
    )
    blocks, _ = multisim.make_blocks(["overlay"], [template])
    return multisim.MultisimCovariance(
        spec=MultisimSpec(name, "weightsFlux"),
        blocks=blocks,
        nominal_histograms={("overlay", "t"): Histogram1D(nominal_values, errors, binning)},
        covariance=np.asarray(covariance, dtype=np.float64),
        thetas=np.array([]),
        n_universes=10,
    )


class TestDecompose:
    def test_ordering_and_reconstruction(self):
        covariance = _random_covariance(6)
        eigenvalues, eigenvectors = eigenmodes.decompose(covariance)

        assert np.all(np.diff(eigenvalues) <= 0.0)
        np.testing.assert_allclose(eigenmodes.reconstruct_covariance(eigenvalues, eigenvectors), covariance, atol=1e-10)
        np.testing.assert_allclose(eigenvectors.T @ eigenvectors, np.eye(6), atol=1e-10)

    def test_deterministic_sign(self):
        eigenvalues, eigenvectors = eigenmodes.decompose(np.diag([1.0, 3.0, 2.0]))

        np.testing.assert_allclose(eigenvalues, [3.0, 2.0, 1.0])
        # Largest magnitude component of each eigenvector is positive
        np.testing.assert_allclose(eigenvectors, [[0.0, 0.0, 1.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])

    def test_ties_keep_index_order(self):
        eigenvalues, eigenvectors = eigenmodes.decompose(np.diag([2.0, 2.0, 1.0]))
        np.testing.assert_allclose(eigenvalues, [2.0, 2.0, 1.0])
        np.testing.assert_allclose(eigenvectors[:, 2], [0.0, 0.0, 1.0])


class TestModeSelection:
    def test_keep_fraction(self):
        eigenvalues = np.array([6.0, 3.0, 1.0, 0.0])
        assert eigenmodes.select_mode_count(eigenvalues, max_modes=10, keep_fraction=0.5) == 1
        assert eigenmodes.select_mode_count(eigenvalues, max_modes=10, keep_fraction=0.9) == 2
        assert eigenmodes.select_mode_count(eigenvalues, max_modes=10, keep_fraction=0.99) == 3

    def test_max_modes(self):
        eigenvalues = np.array([6.0, 3.0, 1.0])
        assert eigenmodes.select_mode_count(eigenvalues, max_modes=1, keep_fraction=0.99) == 1

    def test_negative_eigenvalues_never_kept(self):
        eigenvalues = np.array([1.0, -1e-12, -1e-9])
        assert eigenmodes.select_mode_count(eigenvalues, max_modes=10, keep_fraction=1.0) == 1

    def test_zero_matrix(self):
        assert eigenmodes.select_eigenmodes(np.zeros((3, 3)), max_modes=5, keep_fraction=0.99) == []

    def test_monotonic_in_keep_fraction(self):
        covariance = _random_covariance(8)
        counts = [
            len(eigenmodes.select_eigenmodes(covariance, max_modes=8, keep_fraction=f)) for f in (0.3, 0.6, 0.9, 1.0)
        ]
        assert counts == sorted(counts)
        assert counts[-1] == 8

    def test_explained_variance_fraction(self):
        np.testing.assert_allclose(eigenmodes.explained_variance_fraction([3.0, 1.0, -1.0]), [0.75, 1.0, 1.0])
        np.testing.assert_allclose(eigenmodes.explained_variance_fraction([0.0, 0.0]), [0.0, 0.0])


class TestEigenmodeVariations:
    def test_single_mode(self):
        covariance = np.array([[4.0, -4.0], [-4.0, 4.0]])
        result = _covariance_result(covariance, [10.0, 20.0], errors=[1.0, 2.0])
        modes = eigenmodes.select_eigenmodes(covariance, max_modes=5, keep_fraction=0.99)
        assert len(modes) == 1
        assert modes[0].eigenvalue == pytest.approx(8.0)

        [[pos, neg]] = eigenmodes.eigenmode_variations(result, modes)
        assert pos.systematic_name == "flux_mode00"
        assert (pos.variation_label, neg.variation_label) == ("pos", "neg")
        assert pos.metadata == {"type": "eigenmode", "parent": "flux"}

        up = pos.histograms[("overlay", "t")]
        down = neg.histograms[("overlay", "t")]
        # Symmetric about the nominal, displaced by sqrt(lambda) * v
        np.testing.assert_allclose(up.values + down.values, [20.0, 40.0])
        np.testing.assert_allclose(sorted(np.abs(up.values - [10.0, 20.0])), [2.0, 2.0])
        np.testing.assert_array_equal(up.errors, [1.0, 2.0])
        np.testing.assert_array_equal(down.errors, [1.0, 2.0])

    def test_clamping(self):
        covariance = np.diag([9.0, 0.0])
        result = _covariance_result(covariance, [1.0, 5.0])
        modes = eigenmodes.select_eigenmodes(covariance, max_modes=5, keep_fraction=0.99)

        [[pos, neg]] = eigenmodes.eigenmode_variations(result, modes, clamp_negative_bins=True)
        np.testing.assert_allclose(pos.histograms[("overlay", "t")].values, [4.0, 5.0])
        np.testing.assert_allclose(neg.histograms[("overlay", "t")].values, [0.0, 5.0])

        [[_, unclamped]] = eigenmodes.eigenmode_variations(result, modes, clamp_negative_bins=False)
        np.testing.assert_allclose(unclamped.histograms[("overlay", "t")].values, [-2.0, 5.0])
        # The nominal itself is never modified
        np.testing.assert_allclose(result.nominal, [1.0, 5.0])

    def test_mode_names(self):
        covariance = np.diag([3.0, 2.0, 1.0])
        result = _covariance_result(covariance, [1.0, 1.0, 1.0])
        modes = eigenmodes.select_eigenmodes(covariance, max_modes=3, keep_fraction=1.0)
        variations = eigenmodes.eigenmode_variations(result, modes)
        assert [v[0].systematic_name for v in variations] == ["flux_mode00", "flux_mode01", "flux_mode02"]

    def test_metadata(self):
        assert eigenmodes.multisim_metadata(n_universes=600, n_modes=0) == {
            "type": "multisim_eigen",
            "nuniv": "600",
            "nmodes": "0",
        }
