"""Per-subject date shifting and its ledger."""

from datetime import datetime
from pathlib import Path

import pytest

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.raw import DsFolderAdapter
from bidscurate.pipelines.ledger import ShiftLedger
from bidscurate.pipelines.shift import DateShifter, compute_shift
from bidscurate.utils.errors import ConsistencyError, UsageError

from utils import make_dataset, make_recording, read_header, tree

CFG = ConfigSchema()
REST = "meg/sub-01_ses-01_task-rest_meg.ds"


def _shifter(root: Path, **kwargs) -> DateShifter:
    return DateShifter(root, CFG, DsFolderAdapter(), **kwargs)


def _dataset(tmp_path: Path) -> Path:
    root = make_dataset(tmp_path / "ds")
    make_recording(root, "01", "01", "rest", "2020-01-31T10:00:00")
    make_recording(root, "01", "01", "motor", "2020-01-31T11:30:00")
    make_recording(root, "01", "02", "rest", "2020-03-02T09:00:00")
    return root


def test_compute_shift():
    target = datetime(2000, 1, 1, 12, 0)
    assert compute_shift(target, datetime(2020, 1, 31, 10, 0)) == -7335
    assert compute_shift(target, datetime(2000, 1, 1, 23, 0)) == 0


def test_first_shift_updates_scans_and_recordings(tmp_path: Path):
    root = _dataset(tmp_path)
    result = _shifter(root).run()

    entry = ShiftLedger(ShiftLedger.path_for(root, CFG)).load().get("sub-01")
    assert entry.shift == -7335
    assert entry.first_scan == REST
    assert entry.real_datetime == datetime(2020, 1, 31, 10, 0)
    assert entry.shifted_datetime == datetime(2000, 1, 1, 10, 0)

    scans = (root / "sub-01" / "ses-01" / "sub-01_ses-01_scans.tsv").read_text()
    assert f"{REST}\t2000-01-01T10:00:00" in scans
    assert "meg/sub-01_ses-01_task-motor_meg.ds\t2000-01-01T11:30:00" in scans
    later = (root / "sub-01" / "ses-02" / "sub-01_ses-02_scans.tsv").read_text()
    assert "2000-02-01T09:00:00" in later

    header = read_header(root / "sub-01" / "ses-01" / REST)
    assert header["AcquisitionDateTime"] == "2000-01-01T10:00:00"
    assert len(result.updated_recordings) == 3

    backup = root / "sourcedata" / "sub-01" / "ses-01" / "sub-01_ses-01_scans.tsv"
    assert f"{REST}\t2020-01-31T10:00:00" in backup.read_text()
    assert (root / "scans.json").is_file()
    assert (root / "sourcedata" / "date_shifting.json").is_file()


def test_rerun_writes_nothing(tmp_path: Path):
    root = _dataset(tmp_path)
    _shifter(root).run()
    before = {p: (root / p).read_text() for p in tree(root)}

    again = _shifter(root).run()
    assert again.updated_scans == []
    assert again.updated_recordings == []
    assert again.messages.changes == []
    assert {p: (root / p).read_text() for p in tree(root)} == before


def test_new_row_added_to_backup(tmp_path: Path):
    root = _dataset(tmp_path)
    _shifter(root).run()
    make_recording(root, "01", "01", "noise", "2020-01-31T08:00:00")

    result = _shifter(root).run()
    scans = (root / "sub-01" / "ses-01" / "sub-01_ses-01_scans.tsv").read_text()
    assert "meg/sub-01_ses-01_task-noise_meg.ds\t2000-01-01T08:00:00" in scans
    backup = root / "sourcedata" / "sub-01" / "ses-01" / "sub-01_ses-01_scans.tsv"
    assert "task-noise_meg.ds\t2020-01-31T08:00:00" in backup.read_text()
    assert result.updated_recordings == ["sub-01/ses-01/meg/sub-01_ses-01_task-noise_meg.ds"]


def test_trust_scans_skips_unchanged_rows(tmp_path: Path):
    root = _dataset(tmp_path)
    _shifter(root).run()
    folder = root / "sub-01" / "ses-01" / REST
    header_file = folder / "sub-01_ses-01_task-rest_meg.header.json"
    header_file.write_text(header_file.read_text().replace("2000-01-01", "2020-01-31"))

    assert _shifter(root, trust_scans=True).run().updated_recordings == []
    assert _shifter(root).run().updated_recordings == [f"sub-01/ses-01/{REST}"]


def test_already_shifted_without_ledger_fails(tmp_path: Path):
    root = make_dataset(tmp_path / "ds")
    make_recording(root, "01", "01", "rest", "2000-01-01T10:00:00")
    with pytest.raises(ConsistencyError):
        _shifter(root).run()


def test_default_header_date_skipped(tmp_path: Path):
    root = make_dataset(tmp_path / "ds")
    make_recording(root, "01", "01", "rest", "1970-01-01T00:00:00")
    make_recording(root, "01", "01", "motor", "2020-01-31T10:00:00")
    _shifter(root).run()
    entry = ShiftLedger(ShiftLedger.path_for(root, CFG)).load().get("sub-01")
    assert entry.shift == -7335
    assert entry.first_scan == "meg/sub-01_ses-01_task-motor_meg.ds"


def test_ledger_saved_when_a_subject_fails(tmp_path: Path):
    root = _dataset(tmp_path)
    make_recording(root, "02", "01", "rest", "2000-01-05T10:00:00")
    with pytest.raises(ConsistencyError):
        _shifter(root).run()
    ledger = ShiftLedger(ShiftLedger.path_for(root, CFG)).load()
    assert ledger.shift_of("sub-01") == -7335
    assert ledger.get("sub-02") is None


def test_conflicting_ledger_shift_refused(tmp_path: Path):
    ledger = ShiftLedger(tmp_path / "date_shifting.tsv")
    ledger.set("sub-01", -10, "meg/x.ds", datetime(2020, 1, 1, 10, 0))
    with pytest.raises(ConsistencyError):
        ledger.set("sub-01", -11, "meg/x.ds", datetime(2020, 1, 1, 10, 0))


def test_dry_run_writes_nothing(tmp_path: Path):
    root = _dataset(tmp_path)
    before = {p: (root / p).read_text() for p in tree(root)}
    result = _shifter(root, dry_run=True).run()
    assert {p: (root / p).read_text() for p in tree(root)} == before
    assert result.ledger["shift"].tolist() == ["-7335"]


def test_subject_selection(tmp_path: Path):
    root = _dataset(tmp_path)
    make_recording(root, "02", "01", "rest", "2021-06-01T10:00:00")
    result = _shifter(root).run(["02"])
    assert result.ledger["participant_id"].tolist() == ["sub-02"]
    with pytest.raises(UsageError):
        _shifter(root).run(["99"])


def test_requires_dataset_root(tmp_path: Path):
    with pytest.raises(UsageError):
        DateShifter(tmp_path)
