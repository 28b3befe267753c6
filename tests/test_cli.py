from typer.testing import CliRunner

from kanthink import __version__
from kanthink.cli import app
from kanthink.ledger import RunLedger
from kanthink.models import CardCreated, InstructionRun
from kanthink.store import InMemoryBoardRepository, read_board_file

runner = CliRunner()


def _workspace(tmp_path, board_repo):
    """Board file with one generated card and the run that created it."""
    card = board_repo.create_card("board_1", "col_doing", "Generated", created_by_instruction_id="rule_1")
    ledger = RunLedger()
    ledger.save(InstructionRun(
        id="run_seed",
        instruction_id="rule_1",
        board_id="board_1",
        changes=[CardCreated(card_id=card.id, column_id="col_doing")],
    ))
    path = tmp_path / "board.yaml"
    board_repo.dump(path, extra=ledger.to_dict())
    return path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"KANTHINK v{__version__}" in result.stdout


def test_runs_lists_saved_runs(tmp_path, board_repo):
    path = _workspace(tmp_path, board_repo)
    result = runner.invoke(app, ["runs", str(path), "rule_1"])
    assert result.exit_code == 0
    assert "run_seed" in result.stdout


def test_undo_writes_the_board_back(tmp_path, board_repo):
    path = _workspace(tmp_path, board_repo)

    result = runner.invoke(app, ["undo", str(path), "run_seed"])

    assert result.exit_code == 0, result.stdout
    assert "Reverted 1 change(s)" in result.stdout
    data = read_board_file(path)
    repo = InMemoryBoardRepository.from_dict(data)
    assert repo.get_board("board_1").column("col_doing").card_ids == []
    assert RunLedger.from_dict(data).get("run_seed").undone
    assert (tmp_path / ".kanthink" / "audit.jsonl").exists()

    again = runner.invoke(app, ["undo", str(path), "run_seed"])
    assert "already undone" in again.stdout


def test_missing_inputs_exit_nonzero(tmp_path, board_repo):
    assert runner.invoke(app, ["runs", str(tmp_path / "nope.yaml"), "rule_1"]).exit_code == 1

    path = _workspace(tmp_path, board_repo)
    assert runner.invoke(app, ["undo", str(path), "run_missing"]).exit_code == 1
    assert runner.invoke(app, ["run", str(path), "rule_missing"]).exit_code == 1
