"""Tests for the error kinds and their context."""

import pytest

from nuxsec.errors import (
    ConfigurationError,
    DataAvailabilityError,
    DegenerateInputError,
    StoreIOError,
    SystematicsError,
)


class TestErrors:
    @pytest.mark.parametrize(
        ("error_type", "kind", "builtin"),
        [
            (ConfigurationError, "configuration", ValueError),
            (DataAvailabilityError, "data_availability", LookupError),
            (DegenerateInputError, "degenerate_input", ValueError),
            (StoreIOError, "store_io", OSError),
        ],
    )
    def test_kinds(self, error_type, kind, builtin):
        error = error_type("failed")
        assert error.kind == kind
        assert isinstance(error, SystematicsError)
        assert isinstance(error, builtin)

    def test_context(self):
        error = DataAvailabilityError("Column missing", sample="dirt", key="weightsFlux")
        assert error.with_context(systematic="ppfx", sample="overlay") is error
        # Existing context isn't overwritten
        assert error.sample == "dirt"
        assert error.systematic == "ppfx"
        assert str(error) == "Column missing [systematic=ppfx, sample=dirt, key=weightsFlux]"

    def test_no_context(self):
        assert str(ConfigurationError("Bad")) == "Bad"
