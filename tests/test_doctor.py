"""Tests for crashguard-doctor behavior."""

import json
from types import SimpleNamespace

import pytest

import doctor
from core.dir_lock import DirectoryLockManager
from core.engine import open_data_dir
from doctor import CrashguardDoctor


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({
        'work_root': str(tmp_path),
        'log_folder': str(tmp_path / 'logs'),
    }))
    return path


def test_check_python_version_rejects_37(monkeypatch, capsys):
    monkeypatch.setattr("doctor.sys.version_info", SimpleNamespace(major=3, minor=7, micro=17))
    doc = CrashguardDoctor()

    doc.check_python_version()
    output = capsys.readouterr().out

    assert "need 3.8+" in output
    assert "Python version too old" in doc.issues
    assert doc.recommended_actions() == ["Install Python 3.8+ and run doctor again."]


def test_check_python_version_accepts_312(monkeypatch, capsys):
    monkeypatch.setattr("doctor.sys.version_info", SimpleNamespace(major=3, minor=12, micro=4))
    doc = CrashguardDoctor()

    doc.check_python_version()
    assert "Python 3.12.4" in capsys.readouterr().out
    assert "Python version" in doc.passed


def test_missing_dependency_is_an_issue(monkeypatch, capsys):
    real_import = doctor.importlib.import_module

    def fake_import(name):
        if name == 'psutil':
            raise ImportError(name)
        return real_import(name)

    monkeypatch.setattr(doctor.importlib, "import_module", fake_import)
    doc = CrashguardDoctor()
    doc.check_dependencies()

    assert doc.issues == ["Missing packages: psutil"]
    assert "pip install psutil" in capsys.readouterr().out


class TestConfigCheck:

    def test_missing_file_warns(self, tmp_path):
        doc = CrashguardDoctor(config_path=tmp_path / 'absent.json', quiet=True)
        doc.check_config_file()
        assert doc.warnings == ["No config.json - defaults in use"]
        assert doc.config is not None

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('{nope')
        doc = CrashguardDoctor(config_path=path, quiet=True)
        doc.check_config_file()
        assert doc.issues == ["Config file has invalid JSON"]

    def test_not_an_object(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('[1, 2]')
        doc = CrashguardDoctor(config_path=path, quiet=True)
        doc.check_config_file()
        assert doc.issues == ["Config file has invalid values"]

    def test_invalid_values_are_listed(self, tmp_path, capsys):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'lock_mode': 'mutex'}))
        doc = CrashguardDoctor(config_path=path)
        doc.check_config_file()
        assert doc.issues == ["Config file has invalid values"]
        assert "Field: lock_mode" in capsys.readouterr().out

    def test_valid_values_are_applied(self, config_file):
        doc = CrashguardDoctor(config_path=config_file, quiet=True)
        doc.check_config_file()
        assert "Configuration file" in doc.passed
        assert doc.config.work_root == config_file.parent


def test_environment_checks_pass(config_file):
    doc = CrashguardDoctor(config_path=config_file, quiet=True)
    assert doc.run() == 0
    assert doc.issues == []
    assert doc.total_steps == 7
    assert doc.step == 7
    assert (config_file.parent / 'logs').is_dir()


class TestDataDirChecks:

    def test_healthy_directory(self, config_file, data_dir):
        with open_data_dir(data_dir) as db:
            db.query("CREATE TABLE t (v INTEGER)")

        doc = CrashguardDoctor(data_dir, config_file, quiet=True)
        assert doc.run() == 0
        assert doc.step == 10
        assert doc.details['init_state']['fully_initialized'] is True
        assert doc.details['integrity'] == {'intact': True, 'issues': []}
        assert doc.details['lock']['marker_exists'] is False

    def test_missing_creatable_directory_is_a_warning(self, config_file, data_dir):
        doc = CrashguardDoctor(data_dir, config_file, quiet=True)
        assert doc.run() == 0
        assert f"Data directory does not exist yet: {data_dir}" in doc.warnings
        assert "Integrity check skipped" in doc.warnings
        assert not data_dir.exists()

    def test_missing_directory_under_a_file_is_an_issue(self, config_file, tmp_path):
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')
        target = blocker / 'data'

        doc = CrashguardDoctor(target, config_file, quiet=True)
        assert doc.run() == 1
        assert f"Data directory not found: {target}" in doc.issues

    def test_partial_directory_is_reported_not_quarantined(self, config_file, data_dir):
        data_dir.mkdir()
        (data_dir / 'VERSION').write_text('1\n')

        doc = CrashguardDoctor(data_dir, config_file, quiet=True)
        doc.run()

        assert "Partially initialized - will be quarantined on next open" in doc.warnings
        assert (data_dir / 'VERSION').exists()
        assert not any('.corrupt-' in p.name for p in data_dir.parent.iterdir())

    def test_directory_in_use_skips_integrity(self, config_file, data_dir):
        with open_data_dir(data_dir):
            pass
        manager = DirectoryLockManager()
        with manager.acquire(data_dir):
            doc = CrashguardDoctor(data_dir, config_file, quiet=True)
            doc.run()

        assert any(w.startswith("Data directory locked by PID") for w in doc.warnings)
        assert 'integrity' not in doc.details

    def test_stale_marker_warns(self, config_file, data_dir, dead_pid):
        with open_data_dir(data_dir):
            pass
        DirectoryLockManager().marker_path(data_dir).write_text(f"{dead_pid}\n1\n")

        doc = CrashguardDoctor(data_dir, config_file, quiet=True)
        assert doc.run() == 0
        assert "Stale lock marker present" in doc.warnings
        assert doc.details['integrity']['intact'] is True


def test_to_dict_status(config_file):
    doc = CrashguardDoctor(config_path=config_file, quiet=True)
    assert doc.to_dict()['status'] == 'ready'
    doc.warnings.append("something")
    assert doc.to_dict()['status'] == 'ready_with_warnings'
    doc.issues.append("Integrity issues: x")
    data = doc.to_dict(exit_code=1)
    assert data['status'] == 'blocked'
    assert data['exit_code'] == 1
    assert data['recommended_actions'] == [
        "Keep the data directory for inspection; restore from backup if the data matters."
    ]
