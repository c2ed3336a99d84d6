"""Tests for control loading, merging and presets."""

from pathlib import Path

import pytest
import yaml

from simcal.config import (
    IO_PRESETS,
    Control,
    control_to_dict,
    io_preset,
    load_control,
    merge_control,
)


class TestDefaults:
    """Package defaults mirror the dataclass defaults."""

    def test_defaults_match_dataclasses(self):
        assert load_control() == Control()

    def test_default_mode_is_auto(self):
        assert load_control().mode == "auto"

    def test_fixed_mode_when_target_set(self):
        control = load_control(calibration={"n_simulations": 10})
        assert control.mode == "fixed"
        assert control.calibration.n_simulations == 10

    def test_fine_tuning_tiers(self):
        sizes = load_control().fine_tuning.batch_sizes
        assert list(sizes) == ["massive", "large", "standard", "precision", "final"]
        assert sizes["massive"] == 1000
        assert sizes["final"] == 250


class TestPrecedence:
    """Defaults < user control < keyword overrides."""

    def test_mapping_overrides_defaults(self):
        control = load_control({"calibration": {"batch_size": 50}})
        assert control.calibration.batch_size == 50
        assert control.calibration.n_iterations == 3

    def test_keyword_overrides_win(self):
        control = load_control(
            {"calibration": {"batch_size": 50}}, calibration={"batch_size": 20}
        )
        assert control.calibration.batch_size == 20

    def test_yaml_file(self, tmp_path: Path):
        path = tmp_path / "control.yml"
        path.write_text(
            yaml.safe_dump(
                {
                    "targets": {"ess_param": 250.0},
                    "parallel": {"enable": True, "resources": {"memory": "8GB"}},
                }
            )
        )
        control = load_control(path)
        assert control.targets.ess_param == 250.0
        assert control.parallel.enable is True
        assert control.parallel.resources.memory == "8GB"
        assert control.parallel.resources.walltime == "24:00:00"

    def test_empty_yaml_file(self, tmp_path: Path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_control(path) == Control()

    def test_non_mapping_root_rejected(self, tmp_path: Path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(TypeError, match="mapping"):
            load_control(path)

    def test_control_instance_round_trip(self):
        control = load_control(io={"format": "csv"})
        assert load_control(control) == control

    def test_control_to_dict_nested(self):
        d = control_to_dict(load_control())
        assert d["parallel"]["resources"]["cpus"] == 1
        assert d["calibration"]["n_simulations"] is None


class TestMerge:
    """Deep merge with unknown-key rejection."""

    def test_unknown_section_rejected(self):
        with pytest.raises(ValueError, match="Unknown control parameter 'tragets'"):
            load_control({"tragets": {}})

    def test_unknown_key_rejected_with_path(self):
        with pytest.raises(ValueError, match="calibration.batchsize"):
            load_control(calibration={"batchsize": 10})

    def test_open_mappings_accept_any_key(self):
        control = load_control(
            sampling={"flags": {"beta": False}},
            likelihood={"options": {"use_deaths": True}},
        )
        assert control.sampling.flags == {"beta": False}
        assert control.likelihood.options == {"use_deaths": True}

    def test_inputs_not_modified(self):
        base = {"a": {"b": 1, "c": 2}}
        override = {"a": {"b": 5}}
        merged = merge_control(base, override)
        assert merged == {"a": {"b": 5, "c": 2}}
        assert base == {"a": {"b": 1, "c": 2}}

    def test_fine_tuning_tier_override(self):
        control = load_control(fine_tuning={"batch_sizes": {"final": 50}})
        assert control.fine_tuning.batch_sizes["final"] == 50
        assert control.fine_tuning.batch_sizes["massive"] == 1000


class TestIOPresets:
    """Named io presets."""

    @pytest.mark.parametrize("name", sorted(IO_PRESETS))
    def test_presets_load(self, name):
        control = load_control(io=io_preset(name))
        assert control.io.format in ("parquet", "csv")

    def test_debug_preset_is_uncompressed_csv(self):
        io = load_control(io=io_preset("debug")).io
        assert io.format == "csv"
        assert io.compression is None

    def test_archive_preset(self):
        io = load_control(io=io_preset("archive")).io
        assert io.compression == "zstd"
        assert io.compression_level == 9

    def test_none_string_means_no_compression(self):
        assert load_control(io={"compression": "none"}).io.compression is None

    def test_unknown_preset(self):
        with pytest.raises(ValueError, match="Unknown io preset"):
            io_preset("turbo")
