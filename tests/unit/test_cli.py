"""
Unit tests for the gavel command line.
"""

import pytest
from click.testing import CliRunner

from gavel.cli.main import cli
from gavel.utils.logger import GavelLogger


@pytest.fixture
def runner(monkeypatch):
    # Console handlers would bind to the runner's temporary stderr
    monkeypatch.setattr(GavelLogger, "_initialized", True)
    return CliRunner()


class TestCli:
    """Command wiring."""

    def test_init_db(self, runner, tmp_path):
        """init-db creates the schema at --db."""
        db = tmp_path / "cli.db"
        result = runner.invoke(cli, ["--db", str(db), "init-db"])
        assert result.exit_code == 0, result.output
        assert "Schema ready" in result.output
        assert db.exists()

    def test_sweep_empty(self, runner, tmp_path):
        """sweep on an empty store does nothing."""
        result = runner.invoke(cli, ["--db", str(tmp_path / "cli.db"), "sweep"])
        assert result.exit_code == 0, result.output
        assert "Settled: 0" in result.output

    def test_settle_unknown_auction(self, runner, tmp_path):
        """Engine errors become a non-zero exit with the error code."""
        result = runner.invoke(cli, ["--db", str(tmp_path / "cli.db"), "settle", "missing"])
        assert result.exit_code == 1
        assert "NOT_FOUND" in result.output

    @pytest.mark.parametrize(
        "scenario, expected",
        [
            ("english", "alice wins 1 at 170"),
            ("vickrey", "alice wins 1 at 80"),
            ("multi_unit", "bob wins 1 at 40"),
        ],
    )
    def test_demo(self, runner, scenario, expected):
        """Each demo scenario runs end to end."""
        result = runner.invoke(cli, ["demo", "--scenario", scenario])
        assert result.exit_code == 0, result.output
        assert expected in result.output
        assert "auction_ended" in result.output
        assert "Demo complete" in result.output

    def test_bad_log_levels(self, runner, tmp_path):
        """A malformed per-subsystem level is a usage error."""
        result = runner.invoke(
            cli, ["--db", str(tmp_path / "cli.db"), "sweep"], env={"GAVEL_LOG_LEVELS": "outbox.relay"}
        )
        assert result.exit_code == 2
        assert "subsystem=LEVEL" in result.output
