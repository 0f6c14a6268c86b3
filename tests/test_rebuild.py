"""Sidecar and scan-index reconciliation from raw recordings."""

import json
import shutil
from pathlib import Path

import pytest

from bidscurate.config.schema import ConfigSchema
from bidscurate.models import RecordingName
from bidscurate.pipelines.rebuild import (
    RebuildOptions,
    ReconciliationEngine,
    RecordingOverride,
    normalize_name,
)
from bidscurate.utils.errors import UsageError

from utils import make_dataset, make_recording, read_header, tree

CFG = ConfigSchema()
REST = "sub-01_ses-01_task-rest_meg"
NOISE = "sub-emptyroom/ses-20200131/meg/sub-emptyroom_ses-20200131_task-noise_meg.ds"


def _dataset(tmp_path: Path, task: str = "rest") -> Path:
    root = make_dataset(tmp_path / "ds")
    make_recording(
        root,
        "01",
        "01",
        task,
        "2020-01-31T10:00:00",
        recording={"SamplingFrequency": 1200, "PowerLineFrequency": 50},
        coordsystem={"MEGCoordinateSystem": "CTF"},
    )
    make_recording(root, "emptyroom", "20200131", "noise", "2020-01-31T08:00:00")
    return root


def _rebuild(root: Path, overrides=(), **options):
    engine = ReconciliationEngine(root, RebuildOptions(**options), cfg=CFG)
    return engine.run(overrides)


def _meg_json(root: Path, stem: str = REST) -> dict:
    path = root / "sub-01" / "ses-01" / "meg" / (stem[: -len("_meg")] + "_meg.json")
    return json.loads(path.read_text())


# --------------------------------------------------------------------------- #
# Naming policy
# --------------------------------------------------------------------------- #
@pytest.mark.parametrize(
    "task, expected",
    [
        ("rest", "rest"),
        ("resting", "rest"),
        ("restingstate", "rest"),
        ("RestingEO", "restEO"),
        ("spontaneous", "rest"),
        ("motor", "motor"),
    ],
)
def test_rest_synonyms(task, expected):
    name = RecordingName(subject="01", session="01", task=task)
    assert normalize_name(name, CFG)[0].task == expected


def test_noise_task_and_acq_normalised():
    name = RecordingName(subject="emptyroom", session="1", task="empty", acq="XYZ")
    new, notes = normalize_name(name, CFG)
    assert new.task == "noise"
    assert new.acq is None
    assert len(notes) == 2
    aux = RecordingName(subject="01", session="1", task="motor", acq="AUX")
    assert normalize_name(aux, CFG) == (aux, [])


# --------------------------------------------------------------------------- #
# Full rebuilds
# --------------------------------------------------------------------------- #
def test_rebuild_writes_sidecars(tmp_path: Path):
    root = _dataset(tmp_path)
    result = _rebuild(root)

    meg = _meg_json(root)
    assert meg["SamplingFrequency"] == 1200
    assert meg["TaskName"] == "rest"
    assert meg["AssociatedEmptyRoom"] == NOISE
    noise_json = root / NOISE.replace("_meg.ds", "_meg.json")
    assert "AssociatedEmptyRoom" not in json.loads(noise_json.read_text())

    coord = root / "sub-01" / "ses-01" / "meg" / "sub-01_ses-01_coordsystem.json"
    assert json.loads(coord.read_text()) == {"MEGCoordinateSystem": "CTF"}
    channels = root / "sub-01" / "ses-01" / "meg" / "sub-01_ses-01_task-rest_channels.tsv"
    assert channels.read_text().splitlines()[0] == "name\ttype\tunits"
    assert result.noise[REST + ".ds"].path == NOISE


def test_rebuild_is_idempotent(tmp_path: Path):
    root = _dataset(tmp_path)
    _rebuild(root)
    before = {p: (root / p).read_text() for p in tree(root)}

    again = _rebuild(root)
    assert again.messages.changes == []
    assert {p: (root / p).read_text() for p in tree(root)} == before


@pytest.mark.parametrize("rename_files", [False, True])
def test_dry_run_matches_real_run(tmp_path: Path, rename_files: bool):
    root = _dataset(tmp_path, task="resting")
    copy = tmp_path / "copy"
    shutil.copytree(root, copy)
    files_before = tree(copy)

    dry = _rebuild(copy, dry_run=True, rename_files=rename_files)
    assert tree(copy) == files_before

    real = _rebuild(root, rename_files=rename_files)
    assert dry.messages.texts() == real.messages.texts()
    assert real.messages.changes

    scans_updates = [c for c in real.messages.changes if c.endswith("_scans.tsv")]
    if rename_files:
        assert scans_updates == ["Update sub-01/ses-01/sub-01_ses-01_scans.tsv"]
        assert real.renamed == [("sub-01_ses-01_task-resting_meg.ds", REST + ".ds")]
    else:
        assert scans_updates == []


def test_rest_override_without_renaming_warns(tmp_path: Path):
    root = _dataset(tmp_path)
    _rebuild(root)
    files_before = tree(root)

    result = _rebuild(root, [{"Name": REST, "Task": "resting"}], ignore_mismatch=True)
    assert any("non-standard resting-state" in w for w in result.messages.warnings)
    assert result.renamed == []
    assert result.messages.changes == []
    assert tree(root) == files_before


def test_rest_override_with_renaming_renames(tmp_path: Path):
    root = _dataset(tmp_path, task="resting")
    old = "sub-01_ses-01_task-resting_meg"

    result = _rebuild(root, [{"Name": old, "Task": "resting"}], ignore_mismatch=True, rename_files=True)
    assert result.renamed == [(old + ".ds", REST + ".ds")]

    meg_dir = root / "sub-01" / "ses-01" / "meg"
    assert not (meg_dir / (old + ".ds")).exists()
    folder = meg_dir / (REST + ".ds")
    assert read_header(folder)["RunName"] == REST
    scans = (root / "sub-01" / "ses-01" / "sub-01_ses-01_scans.tsv").read_text()
    assert f"meg/{REST}.ds\t2020-01-31T10:00:00" in scans
    assert "resting" not in scans
    assert _meg_json(root)["TaskName"] == "rest"


def test_rename_follows_noise_associations(tmp_path: Path):
    root = make_dataset(tmp_path / "ds")
    make_recording(root, "01", "01", "rest", "2020-01-31T10:00:00")
    make_recording(root, "emptyroom", "20200131", "empty", "2020-01-31T08:00:00")
    old = "sub-emptyroom/ses-20200131/meg/sub-emptyroom_ses-20200131_task-empty_meg.ds"

    first = _rebuild(root)
    assert any("should be renamed" in w for w in first.messages.warnings)
    assert _meg_json(root)["AssociatedEmptyRoom"] == old

    result = _rebuild(root, rename_files=True)
    assert result.renamed == [
        ("sub-emptyroom_ses-20200131_task-empty_meg.ds", "sub-emptyroom_ses-20200131_task-noise_meg.ds")
    ]
    assert not (root / old).exists()
    assert _meg_json(root)["AssociatedEmptyRoom"] == NOISE
    assert (root / NOISE.replace("_meg.ds", "_meg.json")).is_file()


def test_precedence_override_kept_raw(tmp_path: Path):
    root = _dataset(tmp_path)
    _rebuild(root)
    path = root / "sub-01" / "ses-01" / "meg" / "sub-01_ses-01_task-rest_meg.json"
    doc = json.loads(path.read_text())
    doc.update({"PowerLineFrequency": 60, "Manufacturer": "CTF", "Extra": "x"})
    path.write_text(json.dumps(doc))

    _rebuild(
        root,
        [{"Name": REST, "Manufacturer": "Other"}],
        keep_fields=["PowerLineFrequency", "Manufacturer"],
        ignore_mismatch=True,
    )
    meg = _meg_json(root)
    assert meg["PowerLineFrequency"] == 60  # kept over raw
    assert meg["Manufacturer"] == "Other"  # override over kept
    assert meg["SamplingFrequency"] == 1200  # raw
    assert "Extra" not in meg


def test_keep_all_fields(tmp_path: Path):
    root = _dataset(tmp_path)
    _rebuild(root)
    path = root / "sub-01" / "ses-01" / "meg" / "sub-01_ses-01_task-rest_meg.json"
    doc = json.loads(path.read_text())
    doc["Extra"] = "x"
    path.write_text(json.dumps(doc))

    _rebuild(root, keep_fields=["*"])
    assert _meg_json(root)["Extra"] == "x"


# --------------------------------------------------------------------------- #
# Overrides
# --------------------------------------------------------------------------- #
def test_override_matching_nothing_fails(tmp_path: Path):
    root = _dataset(tmp_path)
    with pytest.raises(UsageError):
        _rebuild(root, [{"Name": "sub-01_ses-01_task-motor_meg"}])


def test_override_mismatch_downgraded(tmp_path: Path):
    root = _dataset(tmp_path)
    result = _rebuild(root, [{"Name": "sub-01_ses-01_task-motor_meg"}], ignore_mismatch=True)
    assert any("matches no recording" in w for w in result.messages.warnings)
    assert any("has no override" in w for w in result.messages.warnings)


def test_override_name_with_path_rejected(tmp_path: Path):
    root = _dataset(tmp_path)
    with pytest.raises(UsageError):
        _rebuild(root, [{"Name": f"sub-01/ses-01/meg/{REST}"}], ignore_mismatch=True)


def test_override_key_from_entities():
    ov = RecordingOverride.model_validate({"Subject": "01", "Session": 1, "Task": "rest", "Run": "02"})
    assert ov.key(CFG) == "sub-01_ses-1_task-rest_run-02_meg"
    with pytest.raises(UsageError):
        RecordingOverride.model_validate({"Subject": "01", "Task": "rest"}).key(CFG)


def test_override_provides_noise(tmp_path: Path):
    root = _dataset(tmp_path)
    _rebuild(root, [{"Name": REST, "Noise": "sub-emptyroom/other.ds"}], ignore_mismatch=True)
    assert _meg_json(root)["AssociatedEmptyRoom"] == "sub-emptyroom/other.ds"


# --------------------------------------------------------------------------- #
# Scan indexes
# --------------------------------------------------------------------------- #
def test_missing_scan_row_added(tmp_path: Path):
    root = make_dataset(tmp_path / "ds")
    make_recording(root, "01", "01", "rest", "2020-01-31T10:00:00", scan_time=None)
    _rebuild(root)
    scans = (root / "sub-01" / "ses-01" / "sub-01_ses-01_scans.tsv").read_text()
    assert scans == f"filename\tacq_time\nmeg/{REST}.ds\t2020-01-31T10:00:00\n"


def test_scan_time_mismatch_warns(tmp_path: Path):
    root = make_dataset(tmp_path / "ds")
    make_recording(root, "01", "01", "rest", "2020-01-31T10:00:00", scan_time="2020-01-31T13:00:00")
    result = _rebuild(root)
    assert any("differs from the recording" in w for w in result.messages.warnings)

    result = _rebuild(root, overwrite_times=True)
    scans = (root / "sub-01" / "ses-01" / "sub-01_ses-01_scans.tsv").read_text()
    assert "2020-01-31T10:00:00" in scans


def test_orphan_scan_row_kept(tmp_path: Path):
    root = _dataset(tmp_path)
    scans = root / "sub-01" / "ses-01" / "sub-01_ses-01_scans.tsv"
    with scans.open("a") as fh:
        fh.write("meg/sub-01_ses-01_task-gone_meg.ds\t2020-01-31T11:00:00\n")
    result = _rebuild(root)
    assert any("has no recording" in w for w in result.messages.warnings)
    assert "task-gone" in scans.read_text()


def test_continue_from_scans_skips_recordings(tmp_path: Path):
    root = _dataset(tmp_path)
    _rebuild(root, continue_from="scans")
    assert not (root / "sub-01" / "ses-01" / "meg" / "sub-01_ses-01_task-rest_meg.json").exists()
    with pytest.raises(UsageError):
        _rebuild(root, continue_from="99")


def test_dataset_description_and_ignore(tmp_path: Path):
    root = _dataset(tmp_path)
    engine = ReconciliationEngine(root, RebuildOptions(ignore_patterns=["*hz.ds"]), cfg=CFG)
    engine.run(dataset_overrides={"Authors": ["A. B."]})
    desc = json.loads((root / "dataset_description.json").read_text())
    assert desc["Authors"] == ["A. B."]
    assert desc["Name"] == "Study"
    assert (root / ".bidsignore").read_text() == "*hz.ds\n"
