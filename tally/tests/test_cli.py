"""
Tests for the command-line interface and logging setup.
"""

import json
import logging

import pytest

from .. import cli
from ..config import Settings
from ..logging import setup_logging
from .conftest import SESSION, persisted_snapshot


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)


def run(capsys, *argv):
    cli.main(list(argv))
    return capsys.readouterr().out


def run_failing(capsys, *argv):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(list(argv))
    return exc_info.value.code, capsys.readouterr().out


class TestFormulaCommands:
    """Tests for validate, eval and refs."""

    def test_validate(self, capsys):
        assert run(capsys, "validate", "{a} + 1").strip() == "Formula is valid"

    def test_validate_invalid(self, capsys):
        code, out = run_failing(capsys, "validate", "foo(1)")
        assert code == 1
        assert "Unknown function: foo" in out

    def test_eval(self, capsys):
        assert run(capsys, "eval", "{a} * 2", "--ref", "a=3").strip() == "6"

    def test_eval_round(self, capsys):
        assert run(capsys, "eval", "round() + 0.5", "--round", "2").strip() == "2.5"

    def test_eval_error(self, capsys):
        code, out = run_failing(capsys, "eval", "1/0")
        assert code == 1
        assert out.strip() == "Error: Division by zero"

    def test_eval_bad_reference(self, capsys):
        code, _ = run_failing(capsys, "eval", "{a}", "--ref", "a")
        assert code == 2
        code, _ = run_failing(capsys, "eval", "{a}", "--ref", "a=lots")
        assert code == 2

    def test_refs(self, capsys):
        assert run(capsys, "refs", "{b} + {a}").split() == ["a", "b"]

    def test_no_command(self, capsys):
        code, _ = run_failing(capsys)
        assert code == 1


class TestTotalsCommand:
    """Tests for the totals command."""

    @pytest.fixture
    def state_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps(persisted_snapshot()), encoding="utf-8")
        return path

    def test_totals(self, capsys, state_file):
        out = run(capsys, "totals", str(state_file), "--session", SESSION)
        lines = out.splitlines()
        assert "p1: 4" in lines
        assert "  Houses: 4" in lines
        assert "p2: 0" in lines
        assert lines[-1] == "Winners: p1"

    def test_unknown_session(self, capsys, state_file):
        code, out = run_failing(capsys, "totals", str(state_file), "--session", "nope")
        assert code == 1
        assert "Session not found" in out

    def test_missing_file(self, capsys, tmp_path):
        code, out = run_failing(capsys, "totals", str(tmp_path / "missing.json"), "--session", SESSION)
        assert code == 1
        assert "File not found" in out


class TestSetupLogging:
    """Tests for setup_logging()."""

    @pytest.fixture(autouse=True)
    def restore_package_logger(self):
        logger = logging.getLogger("tally")
        handlers, level = logger.handlers[:], logger.level
        yield
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers[:] = handlers
        logger.setLevel(level)

    def test_stderr_only(self):
        assert setup_logging(Settings(log_level="DEBUG")) is None
        logger = logging.getLogger("tally")
        assert logger.level == logging.DEBUG
        assert [type(h) for h in logger.handlers] == [logging.StreamHandler]

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(Settings(log_level="chatty"))
        assert logging.getLogger("tally").level == logging.INFO

    def test_log_file(self, tmp_path):
        path = setup_logging(Settings(env="test", log_dir=str(tmp_path / "logs")))
        assert path.parent == tmp_path / "logs"
        assert path.name.startswith("tally-test-")
        assert path.suffix == ".log"
        logging.getLogger("tally.engine_core").info("hello")
        assert "tally.engine_core: hello" in path.read_text(encoding="utf-8")

    def test_repeated_calls_do_not_stack(self):
        setup_logging(Settings())
        setup_logging(Settings())
        assert len(logging.getLogger("tally").handlers) == 1

    def test_other_handlers_left_alone(self):
        logger = logging.getLogger("tally")
        extra = logging.NullHandler()
        logger.addHandler(extra)
        setup_logging(Settings())
        assert extra in logger.handlers
        assert len(logger.handlers) == 2
