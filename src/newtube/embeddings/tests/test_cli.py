from typer.testing import CliRunner

from newtube import __version__
from newtube.cli import app

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_enqueue_rejects_invalid_json():
    result = runner.invoke(app, ["enqueue", "VIDEO_EMBEDDING", "--config", "{not json"])
    assert result.exit_code == 1
    assert "Invalid --config JSON" in result.output


def test_db_requires_alembic_ini(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["db", "current"])
    assert result.exit_code == 1
    assert "alembic.ini not found" in result.output
