"""Loading YAML configuration into DispatchSettings."""

from __future__ import annotations

import pytest
import yaml

from dispatch_config import get_active_config
from dispatch_config.loader import compute_checksum, load_settings, parse_qr, parse_settings

MINIMAL = {
    "config_id": "unit",
    "database": {"url": "sqlite:///:memory:"},
    "qr": {"secret": "inline-secret"},
}


def _write(tmp_path, data, name="dispatch.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaultSet:
    def test_default_set_loads(self):
        settings = get_active_config(environ={})

        assert settings.config_id == "default"
        assert settings.qr.secret == "dev-only-qr-secret"
        assert settings.qr.secret_env == "DISPATCH_QR_SECRET"
        assert settings.retry.max_attempts == 3
        assert settings.tasks.bulk_chunk_size == 50
        assert len(settings.checksum) == 64

    def test_environment_secret_wins(self):
        settings = get_active_config(environ={"DISPATCH_QR_SECRET": "from-env"})
        assert settings.qr.secret == "from-env"

    def test_secret_not_in_repr(self):
        settings = get_active_config(environ={"DISPATCH_QR_SECRET": "from-env"})
        assert "from-env" not in repr(settings.qr)

    def test_trace_logged(self, captured_logs):
        settings = get_active_config(environ={})

        (trace,) = [r for r in captured_logs() if r["message"] == "DISPATCH_CONFIG_TRACE"]
        assert trace["trace_type"] == "DISPATCH_CONFIG_TRACE"
        assert trace["config_set_id"] == "default"
        assert trace["checksum"] == settings.checksum
        assert trace["config_path"].endswith("default.yaml")


class TestParsing:
    def test_defaults_fill_optional_sections(self):
        settings = parse_settings(MINIMAL, environ={})

        assert settings.version == 1
        assert settings.retry.base_delay == 0.05
        assert settings.side_effects.synchronous is False
        assert settings.logging.level == "INFO"
        assert settings.qr.require_verification is False

    def test_load_from_file(self, tmp_path):
        data = dict(MINIMAL, version=4, tasks={"bulk_chunk_size": 7})
        settings = load_settings(_write(tmp_path, data), environ={})

        assert settings.version == 4
        assert settings.tasks.bulk_chunk_size == 7

    def test_logging_level_case_insensitive(self):
        settings = parse_settings(dict(MINIMAL, logging={"level": "debug"}), environ={})
        assert settings.logging.level == "DEBUG"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml", environ={})

    def test_missing_config_id(self):
        data = {k: v for k, v in MINIMAL.items() if k != "config_id"}
        with pytest.raises(KeyError):
            parse_settings(data, environ={})

    def test_missing_database_url(self):
        with pytest.raises(KeyError):
            parse_settings(dict(MINIMAL, database={}), environ={})


class TestValidation:
    def test_no_secret_anywhere(self):
        with pytest.raises(ValueError, match="DISPATCH_QR_SECRET"):
            parse_qr({"secret_env": "DISPATCH_QR_SECRET"}, environ={})

    def test_empty_environment_value_falls_back(self):
        qr = parse_qr({"secret_env": "QR", "secret": "inline"}, environ={"QR": ""})
        assert qr.secret == "inline"

    @pytest.mark.parametrize("section, values", [
        ("retry", {"max_attempts": 0}),
        ("retry", {"max_attempts": True}),
        ("retry", {"base_delay": -1}),
        ("retry", {"backoff_factor": 0}),
        ("database", {"url": "sqlite://", "pool_size": 0}),
        ("database", {"url": "sqlite://", "pool_timeout": "30"}),
        ("tasks", {"bulk_chunk_size": 0}),
        ("side_effects", {"max_workers": -2}),
        ("inventory", {"default_reorder_point": -1}),
        ("logging", {"level": "verbose"}),
    ])
    def test_rejected(self, section, values):
        with pytest.raises(ValueError):
            parse_settings(dict(MINIMAL, **{section: values}), environ={})

    def test_zero_allowed_where_documented(self):
        data = dict(
            MINIMAL,
            database={"url": "sqlite://", "max_overflow": 0},
            retry={"base_delay": 0, "max_delay": 0},
        )
        settings = parse_settings(data, environ={})

        assert settings.database.max_overflow == 0
        assert settings.retry.delay_for(2) == 0.0


class TestChecksum:
    def test_stable_across_key_order(self):
        reordered = {"qr": MINIMAL["qr"], "database": MINIMAL["database"], "config_id": "unit"}
        assert compute_checksum(dict(MINIMAL)) == compute_checksum(reordered)

    def test_changes_with_content(self):
        assert compute_checksum(dict(MINIMAL)) != compute_checksum(dict(MINIMAL, version=2))

    def test_same_file_same_checksum(self, tmp_path):
        path = _write(tmp_path, MINIMAL)
        assert load_settings(path, environ={}).checksum == load_settings(path, environ={}).checksum
