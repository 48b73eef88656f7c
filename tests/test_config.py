import json

import pytest

from ligerpy.config import DEFAULT_CONFIG, load_json_config


class TestConfig:
    def test_defaults_filled(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"k": 10, "resolution": 0.8}), encoding="utf-8")

        config = load_json_config(path)
        assert config["k"] == 10
        assert config["resolution"] == 0.8
        assert config["lambda"] == DEFAULT_CONFIG["lambda"]

    def test_invalid_json_reports_line_and_column(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text('{"k": 1,}\n', encoding="utf-8")
        with pytest.raises(ValueError, match=r"line \d+, column \d+"):
            load_json_config(bad)

    def test_non_object_rejected(self, tmp_path):
        bad = tmp_path / "list.json"
        bad.write_text(json.dumps([1, 2]), encoding="utf-8")
        with pytest.raises(ValueError, match="expected JSON object"):
            load_json_config(bad)

    def test_unknown_keys_rejected(self, tmp_path):
        bad = tmp_path / "unknown.json"
        bad.write_text(json.dumps({"n_factors": 3}), encoding="utf-8")
        with pytest.raises(ValueError, match="Unknown config keys"):
            load_json_config(bad)

    def test_wrong_extension_and_missing(self, tmp_path):
        bad = tmp_path / "config.yaml"
        bad.write_text("{}", encoding="utf-8")
        with pytest.raises(ValueError, match="Use a .json config file"):
            load_json_config(bad)
        with pytest.raises(FileNotFoundError):
            load_json_config(tmp_path / "missing.json")
