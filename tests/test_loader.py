"""Tests for resolving task references."""

import pytest

from tickwork.loader import TaskLoader, TaskLoadError

from .helpers import asset


class TestFileReferences:
    def test_loads_run_from_file(self):
        run = TaskLoader().load(asset("normal"))
        assert run(lambda msg: None) is True

    def test_custom_entry_point(self, tmp_path):
        path = tmp_path / "job.py"
        path.write_text("def main(log):\n    return 'main'\n")
        assert TaskLoader(entry_point="main").load(str(path))(print) == "main"

    def test_missing_file(self, tmp_path):
        with pytest.raises(TaskLoadError, match="not found"):
            TaskLoader().load(str(tmp_path / "missing.py"))

    def test_missing_entry_point(self):
        with pytest.raises(TaskLoadError, match="no entry point 'run'"):
            TaskLoader().load(asset("noentry"))

    def test_not_callable(self, tmp_path):
        path = tmp_path / "notcallable.py"
        path.write_text("run = 3\n")
        with pytest.raises(TaskLoadError, match="not callable"):
            TaskLoader().load(str(path))


class TestModuleReferences:
    def test_module_and_function(self, tmp_path, monkeypatch):
        (tmp_path / "tw_jobs_a.py").write_text("def sync(log):\n    return 'synced'\n")
        monkeypatch.syspath_prepend(str(tmp_path))
        assert TaskLoader().load("tw_jobs_a:sync")(print) == "synced"

    def test_bare_module_uses_default_entry_point(self, tmp_path, monkeypatch):
        (tmp_path / "tw_jobs_b.py").write_text("def run(log):\n    return 'ran'\n")
        monkeypatch.syspath_prepend(str(tmp_path))
        assert TaskLoader().load("tw_jobs_b")(print) == "ran"

    def test_unknown_module(self):
        with pytest.raises(TaskLoadError, match="Cannot import"):
            TaskLoader().load("tickwork_no_such_module:run")

    def test_empty_reference(self):
        with pytest.raises(TaskLoadError):
            TaskLoader().load("")

    def test_load_error_is_import_error(self):
        assert issubclass(TaskLoadError, ImportError)
