import json

from api import errorlog


def _boom():
    try:
        raise RuntimeError("model returned nonsense")
    except RuntimeError as exc:
        return exc


def test_writes_json_line_in_development(monkeypatch, tmp_path):
    path = tmp_path / "errors.txt"
    monkeypatch.setattr(errorlog, "APP_ENV", "development")
    monkeypatch.setattr(errorlog, "ERROR_LOG_PATH", path)
    errorlog.append_error(_boom(), "json-parse")
    errorlog.append_error(_boom(), "json-parse")
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    entry = json.loads(lines[0])
    assert entry["scope"] == "json-parse"
    assert entry["message"] == "model returned nonsense"
    assert "RuntimeError" in entry["stack"]


def test_silent_outside_development(monkeypatch, tmp_path):
    path = tmp_path / "errors.txt"
    monkeypatch.setattr(errorlog, "APP_ENV", "production")
    monkeypatch.setattr(errorlog, "ERROR_LOG_PATH", path)
    errorlog.append_error(_boom())
    assert not path.exists()


def test_unwritable_path_does_not_raise(monkeypatch, tmp_path):
    monkeypatch.setattr(errorlog, "APP_ENV", "development")
    monkeypatch.setattr(errorlog, "ERROR_LOG_PATH", tmp_path / "missing" / "errors.txt")
    errorlog.append_error(_boom())
