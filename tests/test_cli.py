import json
from pathlib import Path

import pytest

from linkstash.cli import main


def _cli(db: Path, *args: str) -> int:
    return main(["--db", str(db), "--no-color", *args])


@pytest.fixture(autouse=True)
def _no_env_config(monkeypatch):
    for name in ("LINKSTASH_DB", "LINKSTASH_ENRICH", "LINKSTASH_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_add_offline_list_and_search(tmp_path: Path, capsys, network_calls):
    db = tmp_path / "b.sqlite"
    assert _cli(db, "mkdir", "Work") == 0
    assert _cli(db, "add", "https://example.com/docs", "--folder", "Work") == 0
    assert _cli(db, "add", "https://python.org/", "--title", "Python", "--favicon", "https://python.org/f.ico") == 0
    capsys.readouterr()

    assert _cli(db, "list", "--folder", "Work") == 0
    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 1
    assert out[0].split("\t")[1:] == ["Work", "example.com", "https://example.com/docs"]
    assert network_calls

    assert _cli(db, "search", "PYTHON") == 0
    assert capsys.readouterr().out.count("\n") == 1

    assert _cli(db, "folders") == 0
    assert capsys.readouterr().out.strip().endswith("\tWork\t1")


def test_validation_errors_exit_2(tmp_path: Path, network_calls):
    db = tmp_path / "b.sqlite"
    assert _cli(db, "add", "ftp://example.com/file") == 2
    assert _cli(db, "mkdir", "Work") == 0
    assert _cli(db, "mkdir", "WORK") == 2
    assert _cli(db, "open", "missing") == 2
    assert _cli(db, "import", str(tmp_path / "absent.json")) == 2
    assert network_calls == []


def test_unusable_database_exits_1(tmp_path: Path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    assert _cli(blocker / "b.sqlite", "list") == 1


def test_export_import_round_trip(tmp_path: Path, capsys):
    src = tmp_path / "src.sqlite"
    dst = tmp_path / "dst.sqlite"
    out = tmp_path / "export.json"
    assert _cli(src, "--no-enrich", "mkdir", "Work") == 0
    assert _cli(src, "--no-enrich", "add", "https://a.test/", "--title", "A", "--folder", "Work") == 0
    assert _cli(src, "export", "--out", str(out)) == 0

    assert _cli(dst, "import", str(out)) == 0
    capsys.readouterr()
    assert _cli(dst, "export") == 0
    assert json.loads(capsys.readouterr().out) == json.loads(out.read_text(encoding="utf-8"))
