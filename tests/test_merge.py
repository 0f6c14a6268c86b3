"""Chronological session merge of two datasets."""

from pathlib import Path
import errno
import json
import os

import pandas as pd
import pytest

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.sidecars import SidecarStore
from bidscurate.pipelines.merge import MergeEngine, MergeOptions, merge_tree
from bidscurate.utils.errors import ConsistencyError, UsageError

from utils import make_dataset, make_recording, tree

CFG = ConfigSchema()


def _engine(source, destination, **options) -> MergeEngine:
    return MergeEngine(source, destination, MergeOptions(**options), cfg=CFG)


def _sessions(root: Path, subject: str = "01"):
    return sorted(p.name for p in (root / f"sub-{subject}").iterdir() if p.is_dir())


def test_same_day_sessions_merge_under_destination_label(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    src = make_dataset(tmp_path / "src")
    make_recording(dst, "01", "01", "rest", "2021-03-01T10:00:00")
    make_recording(src, "01", "05", "motor", "2021-03-01T09:00:00")

    result = _engine(src, dst).run()

    assert _sessions(dst) == ["ses-01"]
    meg = dst / "sub-01" / "ses-01" / "meg"
    assert (meg / "sub-01_ses-01_task-rest_meg.ds").is_dir()
    assert (meg / "sub-01_ses-01_task-motor_meg.ds").is_dir()
    scans = (dst / "sub-01" / "ses-01" / "sub-01_ses-01_scans.tsv").read_text().splitlines()
    assert scans == [
        "filename\tacq_time",
        "meg/sub-01_ses-01_task-motor_meg.ds\t2021-03-01T09:00:00",
        "meg/sub-01_ses-01_task-rest_meg.ds\t2021-03-01T10:00:00",
    ]
    assert not (src / "sub-01").exists()
    assert set(result.table["action"]) == {"merge"}
    assert set(result.table["status"]) == {"merged"}


def test_label_clash_uses_temporary_label(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    src = make_dataset(tmp_path / "src")
    make_recording(dst, "01", "01", "rest", "2021-01-01T10:00:00")
    make_recording(dst, "01", "02", "rest", "2021-03-01T10:00:00")
    make_recording(src, "01", "01", "motor", "2021-02-01T10:00:00")
    make_recording(src, "01", "02", "motor", "2021-04-01T10:00:00")

    result = _engine(src, dst).run()

    assert ("source", "01", "02", "02temp") in result.renames
    table = result.table.set_index(["side", "old_session"])
    assert table.loc[("source", "02"), "temp_session"] == "02temp"
    assert table.loc[("source", "02"), "session"] == "04"
    assert table.loc[("source", "01"), "session"] == "02"
    assert table.loc[("destination", "02"), "session"] == "03"

    assert _sessions(dst) == ["ses-01", "ses-02", "ses-03", "ses-04"]
    assert (dst / "sub-01" / "ses-02" / "meg" / "sub-01_ses-02_task-motor_meg.ds").is_dir()
    assert (dst / "sub-01" / "ses-03" / "meg" / "sub-01_ses-03_task-rest_meg.ds").is_dir()
    assert (dst / "sub-01" / "ses-04" / "meg" / "sub-01_ses-04_task-motor_meg.ds").is_dir()

    audits = list((dst / "derivatives" / "curation_audit").glob("merge_*.tsv"))
    assert len(audits) == 1
    saved = pd.read_csv(audits[0], sep="\t", dtype=str)
    assert "02temp" in set(saved["temp_session"])
    assert set(saved["status"]) == {"merged"}


def test_renumber_destination_only(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    make_recording(dst, "01", "03", "rest", "2021-01-01T10:00:00")
    make_recording(dst, "01", "01", "motor", "2021-02-01T10:00:00")

    result = _engine(None, dst).run()

    assert _sessions(dst) == ["ses-01", "ses-02"]
    assert (dst / "sub-01" / "ses-01" / "meg" / "sub-01_ses-01_task-rest_meg.ds").is_dir()
    assert (dst / "sub-01" / "ses-02" / "meg" / "sub-01_ses-02_task-motor_meg.ds").is_dir()
    assert set(result.table["status"]) == {"renamed"}


def test_zero_pad(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    make_recording(dst, "01", "1", "rest", "2021-01-01T10:00:00")
    _engine(None, dst, zero_pad=3).run()
    assert _sessions(dst) == ["ses-001"]


def test_unsorted_keeps_labels_unless_taken(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    src = make_dataset(tmp_path / "src")
    make_recording(dst, "01", "01", "rest", "2021-01-01T10:00:00")
    make_recording(src, "01", "01", "motor", "2021-02-01T10:00:00")
    make_recording(src, "01", "07", "motor", "2021-03-01T10:00:00")

    _engine(src, dst, sort_sessions=False).run()
    assert _sessions(dst) == ["ses-01", "ses-02", "ses-07"]
    assert (dst / "sub-01" / "ses-02" / "meg" / "sub-01_ses-02_task-motor_meg.ds").is_dir()


def test_rename_source_only(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    src = make_dataset(tmp_path / "src")
    make_recording(dst, "01", "01", "rest", "2021-01-01T10:00:00")
    make_recording(src, "01", "01", "motor", "2021-02-01T10:00:00")

    result = _engine(src, dst, rename_source_only=True).run()
    assert _sessions(src) == ["ses-02"]
    assert _sessions(dst) == ["ses-01"]
    assert result.audit_path is not None
    assert result.audit_path.is_relative_to(src)


def test_sort_with_source_only_rejected(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    with pytest.raises(UsageError):
        _engine(None, dst, rename_source_only=True, sort_sessions=True)


def test_same_side_same_day_is_fatal(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    make_recording(dst, "01", "01", "rest", "2021-01-01T10:00:00")
    make_recording(dst, "01", "02", "motor", "2021-01-01T15:00:00")
    with pytest.raises(ConsistencyError):
        _engine(None, dst).plan()


def test_noise_sessions_without_time_conflict(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    src = make_dataset(tmp_path / "src")
    make_recording(dst, "01", "01", "rest", "2021-01-01T10:00:00")
    make_recording(dst, "emptyroom", "20210101", "noise", "2021-01-01T08:00:00")
    make_recording(src, "emptyroom", "20210101", "noise", "2021-01-01T09:00:00")
    with pytest.raises(ConsistencyError):
        _engine(src, dst).run()
    assert (src / "sub-emptyroom").is_dir()


def test_empty_destination_rejected(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    with pytest.raises(UsageError):
        _engine(None, dst).run()


def test_dry_run_moves_nothing(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    src = make_dataset(tmp_path / "src")
    make_recording(dst, "01", "01", "rest", "2021-01-01T10:00:00")
    make_recording(src, "01", "01", "motor", "2021-02-01T10:00:00")

    result = _engine(src, dst, dry_run=True).run()
    assert result.renames == [("source", "01", "01", "02")]
    assert result.audit_path is None
    assert _sessions(src) == ["ses-01"]
    assert _sessions(dst) == ["ses-01"]


def test_merge_tree_refuses_different_files(tmp_path: Path):
    src = tmp_path / "a" / "sub-01"
    dst = tmp_path / "b" / "sub-01"
    (src / "ses-01").mkdir(parents=True)
    (dst / "ses-01").mkdir(parents=True)
    (src / "ses-01" / "notes.txt").write_text("one")
    (dst / "ses-01" / "notes.txt").write_text("two")
    (src / "ses-01" / "extra.txt").write_text("x")

    store = SidecarStore(tmp_path / "b")
    with pytest.raises(ConsistencyError):
        merge_tree(src, dst, store)
    assert not (dst / "ses-01" / "extra.txt").exists()

    (src / "ses-01" / "notes.txt").write_text("two")
    merge_tree(src, dst, store)
    assert (dst / "ses-01" / "extra.txt").read_text() == "x"
    assert not src.exists()


def _clashing_labels(base: Path):
    dst = make_dataset(base / "dst")
    src = make_dataset(base / "src")
    make_recording(dst, "01", "01", "rest", "2021-01-01T10:00:00")
    make_recording(dst, "01", "02", "rest", "2021-03-01T10:00:00")
    make_recording(src, "01", "01", "motor", "2021-02-01T10:00:00")
    make_recording(src, "01", "02", "motor", "2021-04-01T10:00:00")
    return src, dst


def test_dry_run_reports_what_a_real_run_does(tmp_path: Path):
    src, dst = _clashing_labels(tmp_path / "dry")
    before = (tree(src), tree(dst))
    dry = _engine(src, dst, dry_run=True).run()
    assert (tree(src), tree(dst)) == before

    real_src, real_dst = _clashing_labels(tmp_path / "real")
    real = _engine(real_src, real_dst).run()

    assert dry.messages.texts() == real.messages.texts()
    texts = dry.messages.texts()
    assert (
        "Rename recording sub-01/ses-02/meg/sub-01_ses-02_task-motor_meg.ds"
        " -> sub-01_ses-02temp_task-motor_meg.ds"
    ) in texts
    assert "Rename sub-01/ses-02 -> sub-01/ses-02temp" in texts
    assert "Move sub-01/ses-04 from source" in texts
    assert dry.table["session"].tolist() == real.table["session"].tolist()
    assert set(dry.table["status"]) == {"merged"}


def _write_json(path: Path, doc: dict) -> None:
    path.write_text(json.dumps(doc, indent=2) + "\n")


def test_same_day_sidecars_take_source_version(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    src = make_dataset(tmp_path / "src")
    for dst_label, src_label, day in (("01", "05", "03-01"), ("02", "06", "04-01")):
        make_recording(dst, "01", dst_label, "rest", f"2021-{day}T10:00:00")
        make_recording(src, "01", src_label, "motor", f"2021-{day}T09:00:00")
        dst_meg = dst / "sub-01" / f"ses-{dst_label}" / "meg"
        src_meg = src / "sub-01" / f"ses-{src_label}" / "meg"
        _write_json(
            dst_meg / f"sub-01_ses-{dst_label}_coordsystem.json",
            {"MEGCoordinateSystem": "CTF"},
        )
        _write_json(
            src_meg / f"sub-01_ses-{src_label}_coordsystem.json",
            {"MEGCoordinateSystem": "CTF", "HeadCoilCoordinateSystem": "CTF"},
        )

    result = _engine(src, dst).run()

    assert _sessions(dst) == ["ses-01", "ses-02"]
    assert not (src / "sub-01").exists()
    coord = dst / "sub-01" / "ses-01" / "meg" / "sub-01_ses-01_coordsystem.json"
    assert json.loads(coord.read_text())["HeadCoilCoordinateSystem"] == "CTF"
    headers = [c.splitlines()[0] for c in result.messages.changes]
    assert "Update sub-01/ses-01/meg/sub-01_ses-01_coordsystem.json" in headers
    assert "Update sub-01/ses-02/meg/sub-01_ses-02_coordsystem.json" in headers


def test_overwrite_clash_detected_before_renaming(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    src = make_dataset(tmp_path / "src")
    make_recording(dst, "01", "01", "rest", "2021-03-01T10:00:00")
    make_recording(src, "01", "05", "motor", "2021-03-01T09:00:00")
    (dst / "sub-01" / "ses-01" / "sub-01_ses-01_notes.txt").write_text("one")
    (src / "sub-01" / "ses-05" / "sub-01_ses-05_notes.txt").write_text("two")
    src_before = tree(src)

    with pytest.raises(ConsistencyError, match="sub-01/ses-01/sub-01_ses-01_notes.txt"):
        _engine(src, dst).run()
    assert tree(src) == src_before
    assert _sessions(src) == ["ses-05"]
    assert not (dst / "derivatives" / "curation_audit").exists()


def test_identical_file_under_other_label_is_no_clash(tmp_path: Path):
    dst = make_dataset(tmp_path / "dst")
    src = make_dataset(tmp_path / "src")
    make_recording(dst, "01", "01", "rest", "2021-03-01T10:00:00")
    make_recording(src, "01", "05", "motor", "2021-03-01T09:00:00")
    (dst / "sub-01" / "ses-01" / "sub-01_ses-01_notes.txt").write_text("see ses-01\n")
    (src / "sub-01" / "ses-05" / "sub-01_ses-05_notes.txt").write_text("see ses-05\n")

    _, ops = _engine(src, dst).plan()
    assert ops == [("source", "01", "05", "01")]


def test_merge_tree_moves_across_filesystems(tmp_path: Path, monkeypatch):
    src = tmp_path / "a" / "sub-01"
    dst = tmp_path / "b" / "sub-01"
    (src / "ses-01").mkdir(parents=True)
    (src / "ses-02" / "meg").mkdir(parents=True)
    (dst / "ses-01").mkdir(parents=True)
    (src / "ses-01" / "sub-01_ses-01_scans.tsv").write_text("filename\tacq_time\n")
    (dst / "ses-01" / "sub-01_ses-01_scans.tsv").write_text("old\n")
    (src / "ses-02" / "meg" / "data.txt").write_text("x")

    def cross_device(a, b):
        raise OSError(errno.EXDEV, "Invalid cross-device link", str(a))

    monkeypatch.setattr(os, "rename", cross_device)
    merge_tree(src, dst, SidecarStore(tmp_path / "b"))

    assert (dst / "ses-02" / "meg" / "data.txt").read_text() == "x"
    assert (dst / "ses-01" / "sub-01_ses-01_scans.tsv").read_text() == "filename\tacq_time\n"
    assert not src.exists()
