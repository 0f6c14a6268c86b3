"""Empty-room association: search window, tie-break and stored values."""

from datetime import datetime, timedelta
from pathlib import Path

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.raw import DsFolderAdapter
from bidscurate.pipelines.discovery import find_dataset_root, list_recordings
from bidscurate.pipelines.noise import NoiseAssociator, NoiseFound

from utils import make_dataset, make_recording

CFG = ConfigSchema()
CENTRAL = "sub-emptyroom/ses-20200131/meg/sub-emptyroom_ses-20200131_task-noise_meg.ds"
LOCAL = "sub-01/ses-01/meg/sub-01_ses-01_task-noise_meg.ds"


def _setup(tmp_path: Path, central_time: str, local_time: str | None = None):
    root = make_dataset(tmp_path / "ds")
    make_recording(root, "emptyroom", "20200131", "noise", central_time)
    if local_time is not None:
        make_recording(root, "01", "01", "noise", local_time)
    make_recording(root, "01", "01", "rest", "2020-01-31T10:00:00")
    recordings = list_recordings(root, CFG)
    assoc = NoiseAssociator(root, CFG, DsFolderAdapter(), candidates=recordings)
    target = next(r for r in recordings if r.name.task == "rest")
    return assoc, target


def test_noise_recordings_listed_first(tmp_path: Path):
    root = make_dataset(tmp_path / "ds")
    make_recording(root, "01", "01", "rest", "2020-01-31T10:00:00")
    make_recording(root, "emptyroom", "20200131", "noise", "2020-01-31T08:00:00")
    recordings = list_recordings(root, CFG)
    assert [r.is_noise for r in recordings] == [True, False]


def test_closest_within_window(tmp_path: Path):
    assoc, target = _setup(tmp_path, "2020-01-31T08:00:00")
    match = assoc.associate(target)
    assert match.found is NoiseFound.SEARCH
    assert match.path == CENTRAL
    assert match.delta == timedelta(hours=2)


def test_equidistant_prefers_same_folder(tmp_path: Path):
    assoc, target = _setup(tmp_path, "2020-01-31T11:00:00", "2020-01-31T09:00:00")
    match = assoc.associate(target)
    assert match.path == LOCAL


def test_closer_central_beats_local(tmp_path: Path):
    assoc, target = _setup(tmp_path, "2020-01-31T10:30:00", "2020-01-31T08:00:00")
    assert assoc.associate(target).path == CENTRAL


def test_outside_window_not_found(tmp_path: Path):
    assoc, target = _setup(tmp_path, "2020-01-30T09:00:00")
    match = assoc.associate(target)
    assert not match
    assert match.path is None
    assert any("No empty-room recording" in w for w in assoc.messages.warnings)


def test_exact_window_edge_excluded(tmp_path: Path):
    assoc, target = _setup(tmp_path, "2020-01-30T10:00:00")
    assert assoc.associate(target).found is NoiseFound.NOT_FOUND


def test_existing_and_provided(tmp_path: Path):
    assoc, target = _setup(tmp_path, "2020-01-31T08:00:00")

    kept = assoc.associate(target, existing=CENTRAL)
    assert kept.found is NoiseFound.EXISTING

    given = assoc.associate(target, provided="sub-emptyroom/elsewhere.ds", existing=CENTRAL)
    assert given.found is NoiseFound.PROVIDED
    assert given.path == "sub-emptyroom/elsewhere.ds"

    forced = assoc.associate(target, existing=CENTRAL, force=True)
    assert forced.found is NoiseFound.SEARCH


def test_stale_existing_searches_again(tmp_path: Path):
    assoc, target = _setup(tmp_path, "2020-01-31T08:00:00")
    match = assoc.associate(target, existing="sub-emptyroom/ses-1/meg/gone.ds")
    assert match.found is NoiseFound.SEARCH
    assert any("no longer exists" in w for w in assoc.messages.warnings)


def test_noise_recording_gets_no_association(tmp_path: Path):
    assoc, _ = _setup(tmp_path, "2020-01-31T08:00:00")
    noise = next(r for r in assoc._noise_recordings() if r.name.subject == "emptyroom")
    match = assoc.associate(noise, existing=CENTRAL)
    assert match.found is NoiseFound.NOT_FOUND
    assert any("ignored" in w for w in assoc.messages.warnings)


def test_explicit_time(tmp_path: Path):
    assoc, target = _setup(tmp_path, "2020-01-31T08:00:00")
    match = assoc.search(target, when=datetime(2020, 1, 31, 8, 30))
    assert match.delta == timedelta(minutes=30)


def test_find_dataset_root(tmp_path: Path):
    root = make_dataset(tmp_path / "ds")
    folder = make_recording(root, "01", "01", "rest", "2020-01-31T10:00:00")
    assert find_dataset_root(folder) == root.resolve()
    assert find_dataset_root(tmp_path) is None
