"""Operational CLI against a throwaway SQLite database."""

import pytest
import yaml

from scripts.dispatch_cli import main


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "cli.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "config_id": "cli",
                "database": {"url": f"sqlite:///{tmp_path / 'cli.db'}"},
                "qr": {"secret": "cli-secret"},
                "side_effects": {"synchronous": True},
                "logging": {"level": "WARNING"},
            }
        )
    )
    return str(path)


def test_init_then_verify(config_path, capsys):
    assert main(["--config", config_path, "init-db"]) == 0
    assert main(["--config", config_path, "verify-ledger"]) == 0

    out = capsys.readouterr().out
    assert "Tables created." in out
    assert "Ledger consistent" in out


def test_stock_levels_and_sweep_on_empty_db(config_path, capsys):
    main(["--config", config_path, "init-db"])

    assert main(["--config", config_path, "stock-levels", "--low-only"]) == 0
    assert main(["--config", config_path, "sweep-overdue"]) == 0

    out = capsys.readouterr().out
    assert "PRODUCT" in out
    assert "0 overdue task(s)" in out


def test_unknown_command_exits():
    with pytest.raises(SystemExit):
        main(["explode"])
