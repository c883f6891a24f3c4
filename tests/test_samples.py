"""Tests for sample kinds, the inclusion policy and the sample list reader."""

import pytest

from nuxsec.errors import ConfigurationError
from nuxsec.samples import SampleFilter, SampleKind, parse_sample_kind, read_sample_list


def _write(tmp_path, lines):
    path = tmp_path / "samples.tsv"
    path.write_text("\n".join(lines) + "\n")
    return path


class TestSampleKind:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("data", SampleKind.DATA),
            ("EXT", SampleKind.EXT),
            ("Overlay", SampleKind.OVERLAY),
            ("mc_overlay", SampleKind.OVERLAY),
            ("dirt", SampleKind.DIRT),
            ("mc_strangeness", SampleKind.STRANGENESS),
            ("something_else", SampleKind.UNKNOWN),
        ],
    )
    def test_parse(self, name, expected):
        assert parse_sample_kind(name) == expected

    def test_is_simulation(self):
        assert SampleKind.DIRT.is_simulation
        assert not SampleKind.EXT.is_simulation
        assert not SampleKind.UNKNOWN.is_simulation


class TestSampleFilter:
    def test_default_accepts_simulation_only(self):
        sample_filter = SampleFilter()
        accepted = [kind for kind in SampleKind if sample_filter.accepts(kind)]
        assert accepted == [SampleKind.OVERLAY, SampleKind.DIRT, SampleKind.STRANGENESS]

    def test_exclusions(self):
        sample_filter = SampleFilter(include_dirt=False, include_strangeness=False)
        assert sample_filter.accepts(SampleKind.OVERLAY)
        assert not sample_filter.accepts(SampleKind.DIRT)
        assert not sample_filter.accepts(SampleKind.STRANGENESS)


class TestReadSampleList:
    def test_valid(self, tmp_path):
        path = _write(
            tmp_path,
            [
                "# samples",
                "sample_name\tsample_kind\tbeam_mode\toutput_path",
                "beam_on\tdata\tNuMI\t/data/beam_on.root",
                "overlay\toverlay\tnumi\t/data/overlay.root",
            ],
        )
        entries = read_sample_list(path)

        assert [e.name for e in entries] == ["beam_on", "overlay"]
        assert entries[0].kind == SampleKind.DATA
        assert entries[0].beam_mode == "numi"
        assert entries[1].kind == SampleKind.OVERLAY
        assert str(entries[1].path) == "/data/overlay.root"

    def test_unknown_kind(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Unknown sample kind"):
            read_sample_list(_write(tmp_path, ["overlay\tsimulated\tnumi\t/data/overlay.root"]))

    def test_too_few_columns(self, tmp_path):
        with pytest.raises(ConfigurationError):
            read_sample_list(_write(tmp_path, ["overlay\toverlay\tnumi"]))

    def test_duplicate_names(self, tmp_path):
        path = _write(tmp_path, ["a\toverlay\tnumi\t/a.root", "a\tdirt\tnumi\t/b.root"])
        with pytest.raises(ConfigurationError, match="Duplicate"):
            read_sample_list(path)

    def test_empty(self, tmp_path):
        with pytest.raises(ConfigurationError):
            read_sample_list(_write(tmp_path, ["# nothing"]))
