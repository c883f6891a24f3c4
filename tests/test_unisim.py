"""Tests for the unisim variation builder."""

import numpy as np
import pytest

from nuxsec import unisim
from nuxsec.errors import ConfigurationError, DataAvailabilityError
from nuxsec.systematics_config import UnisimSpec


@pytest.fixture
def sample(make_sample):
    return make_sample(
        "overlay",
        {
            "x": [0.5, 0.5, 1.5, 1.5],
            "w_template": [1.0, 2.0, 3.0, 4.0],
            "w_alt": [1.0, 1.0, 1.0, 1.0],
            "knob_up": [1.1, 1.2, 1.0, 0.5],
            "knob_dn": [0.9, 0.8, 1.0, 1.5],
        },
    )


class TestBuildUnisim:
    def test_two_sided(self, sample, make_template, engine):
        spec = UnisimSpec("knob", "knob_up", "knob_dn")
        result = unisim.build_unisim(sample, [make_template("x_hist")], spec, engine)

        assert result.systematic == "knob"
        assert result.sample == "overlay"
        np.testing.assert_allclose(result.pos["x_hist"].values, [1.1 + 2.4, 3.0 + 2.0])
        np.testing.assert_allclose(result.neg["x_hist"].values, [0.9 + 1.6, 3.0 + 6.0])

    def test_one_sided_down_is_nominal(self, sample, make_template, engine):
        spec = UnisimSpec("knob", "knob_up", None, one_sided=True)
        templates = [make_template("x_hist")]
        result = unisim.build_unisim(sample, templates, spec, engine)

        nominal = engine.book(sample.events, "", "x", "w_template", templates[0].binning)
        engine.evaluate([nominal])
        np.testing.assert_array_equal(result.neg["x_hist"].values, nominal.result.values)
        np.testing.assert_array_equal(result.neg["x_hist"].errors, nominal.result.errors)

    def test_template_weight_used(self, sample, make_template, engine):
        spec = UnisimSpec("knob", "knob_up", "knob_dn")
        result = unisim.build_unisim(sample, [make_template("x_hist", weight="w_alt")], spec, engine)
        np.testing.assert_allclose(result.pos["x_hist"].values, [2.3, 1.5])

    def test_shared_batch(self, sample, make_template, engine):
        spec = UnisimSpec("knob", "knob_up", "knob_dn")
        templates = [make_template("a"), make_template("b", selection="x > 1")]
        unisim.build_unisim(sample, templates, spec, engine)
        # Up and down of each template share one pass
        assert engine.n_passes == 2

    def test_missing_ratio_column(self, sample, make_template, engine):
        spec = UnisimSpec("knob", "knob_up", "missing_dn")
        with pytest.raises(DataAvailabilityError) as exc_info:
            unisim.build_unisim(sample, [make_template()], spec, engine)
        error = exc_info.value
        assert error.kind == "data_availability"
        assert error.systematic == "knob"
        assert error.sample == "overlay"
        assert error.key == "missing_dn"

    def test_missing_down_column_when_two_sided(self, sample, make_template, engine):
        spec = UnisimSpec("knob", "knob_up", None, one_sided=False)
        with pytest.raises(ConfigurationError):
            unisim.build_unisim(sample, [make_template()], spec, engine)

    def test_variations_and_metadata(self, sample, make_template, engine):
        spec = UnisimSpec("knob", "knob_up", None, one_sided=True, log_normal=True)
        result = unisim.build_unisim(sample, [make_template("x_hist")], spec, engine)

        pos, neg = result.as_variations()
        assert (pos.variation_label, neg.variation_label) == ("pos", "neg")
        assert list(pos.histograms) == [("overlay", "x_hist")]
        assert unisim.unisim_metadata(spec) == {"type": "unisim", "log_normal": "1", "floatable": "0"}
