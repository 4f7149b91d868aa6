"""Tests for partial-initialization detection and quarantine."""

import os
import warnings

import pytest

from core.config import Config
from core.partial_init import PartialInitDetector, PartialInitQuarantined


def make_layout(data_dir, marker=True, entries=3):
    data_dir.mkdir(parents=True, exist_ok=True)
    if marker:
        (data_dir / 'VERSION').write_text('1\n')
    base = data_dir / 'base'
    base.mkdir(exist_ok=True)
    for i in range(entries):
        (base / str(i + 1)).mkdir()


class TestInspect:

    def test_missing_directory(self, data_dir):
        state = PartialInitDetector().inspect(data_dir)
        assert not state.exists
        assert not state.partial
        assert not state.fully_initialized

    def test_empty_directory(self, data_dir):
        data_dir.mkdir()
        state = PartialInitDetector().inspect(data_dir)
        assert state.exists and state.is_empty
        assert not state.partial

    def test_fully_initialized(self, data_dir):
        make_layout(data_dir)
        state = PartialInitDetector().inspect(data_dir)
        assert state.fully_initialized
        assert not state.partial
        assert state.storage_entry_count == 3

    def test_missing_marker_is_partial(self, data_dir):
        make_layout(data_dir, marker=False)
        assert PartialInitDetector().inspect(data_dir).partial

    def test_too_few_storage_entries_is_partial(self, data_dir):
        make_layout(data_dir, entries=2)
        state = PartialInitDetector().inspect(data_dir)
        assert state.partial
        assert state.to_dict()['storage_entry_count'] == 2

    def test_threshold_is_configurable(self, data_dir):
        make_layout(data_dir, entries=2)
        config = Config()
        config.set('min_storage_entries', 2)
        assert PartialInitDetector(config).inspect(data_dir).fully_initialized

    def test_unlistable_directory_raises(self, data_dir, monkeypatch):
        data_dir.mkdir()

        def denied(path):
            raise PermissionError(13, "Permission denied", str(path))

        monkeypatch.setattr("core.partial_init.os.listdir", denied)
        with pytest.raises(OSError):
            PartialInitDetector().inspect(data_dir)


class TestQuarantine:

    def test_partial_directory_is_moved_aside(self, data_dir):
        make_layout(data_dir, marker=True, entries=1)
        (data_dir / 'global').mkdir()
        (data_dir / 'global' / 'control').write_text('engine 1\n')

        with pytest.warns(PartialInitQuarantined) as caught:
            record = PartialInitDetector().check_and_quarantine(data_dir)

        assert record is not None
        assert data_dir.is_dir() and os.listdir(data_dir) == []
        assert record.backup_path.name.startswith('data.corrupt-')
        assert record.backup_path.name.endswith('Z')
        assert (record.backup_path / 'global' / 'control').read_text() == 'engine 1\n'
        assert (record.backup_path / 'VERSION').exists()
        assert str(record.backup_path) in str(caught[0].message)
        assert record.state.partial

    def test_only_marker_counts_as_partial(self, data_dir):
        data_dir.mkdir()
        (data_dir / 'VERSION').write_text('1\n')
        with pytest.warns(PartialInitQuarantined):
            assert PartialInitDetector().check_and_quarantine(data_dir) is not None

    def test_stray_file_counts_as_partial(self, data_dir):
        data_dir.mkdir()
        (data_dir / 'global').mkdir()
        with pytest.warns(PartialInitQuarantined):
            assert PartialInitDetector().check_and_quarantine(data_dir) is not None

    @pytest.mark.parametrize("setup", ["missing", "empty", "complete"])
    def test_other_states_are_left_alone(self, data_dir, setup):
        if setup == "empty":
            data_dir.mkdir()
        elif setup == "complete":
            make_layout(data_dir)

        with warnings.catch_warnings():
            warnings.simplefilter('error', PartialInitQuarantined)
            assert PartialInitDetector().check_and_quarantine(data_dir) is None

        siblings = [p.name for p in data_dir.parent.iterdir()]
        assert not any('.corrupt-' in name for name in siblings)

    def test_backup_names_do_not_collide(self, data_dir):
        detector = PartialInitDetector()
        backups = []
        for _ in range(3):
            data_dir.mkdir(exist_ok=True)
            (data_dir / 'VERSION').write_text('1\n')
            with pytest.warns(PartialInitQuarantined):
                backups.append(detector.check_and_quarantine(data_dir).backup_path)
        assert len(set(backups)) == 3
        assert all(b.exists() for b in backups)

    def test_unlistable_directory_is_left_to_the_engine(self, data_dir, monkeypatch):
        data_dir.mkdir()

        def denied(path):
            raise PermissionError(13, "Permission denied", str(path))

        monkeypatch.setattr("core.partial_init.os.listdir", denied)
        assert PartialInitDetector().check_and_quarantine(data_dir) is None
        assert data_dir.exists()

    def test_custom_quarantine_suffix(self, data_dir):
        config = Config()
        config.set('quarantine_suffix', '.broken')
        data_dir.mkdir()
        (data_dir / 'VERSION').write_text('1\n')
        with pytest.warns(PartialInitQuarantined):
            record = PartialInitDetector(config).check_and_quarantine(data_dir)
        assert record.backup_path.name.startswith('data.broken-')
