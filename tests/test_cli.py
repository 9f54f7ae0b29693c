import json

import pytest

from email_pipeline.__main__ import main
from email_pipeline.storage import dispose_engines


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    yield
    dispose_engines()


def test_init_db_and_health(database, capsys) -> None:
    assert main(["init-db"]) == 0
    assert main(["health"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "healthy"


def test_cron_prints_one_line_per_step(database, capsys) -> None:
    assert main(["--log-level", "warning", "cron"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert [json.loads(line)["job"] for line in lines][0] == "process_queue"
    assert len(lines) == 5


def test_invalid_settings_exit_code(database, monkeypatch) -> None:
    monkeypatch.setenv("QUEUE_BATCH_SIZE", "0")
    assert main(["health"]) == 2
