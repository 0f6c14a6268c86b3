"""Unit tests for models – independent of external I/O."""

from pathlib import Path

import pytest

from bidscurate.models import Recording, RecordingName, is_noise_label
from bidscurate.utils.errors import RecordingNameError, UsageError


def test_parse_full_name():
    """All entities are split in canonical order."""
    name = RecordingName.parse("sub-01_ses-02_task-rest_acq-AUX_run-03_meg.ds")
    assert (name.subject, name.session, name.task) == ("01", "02", "rest")
    assert name.acq == "AUX"
    assert name.run == "03"
    assert name.suffix == "meg"
    assert name.extension == ".ds"


def test_name_round_trip_keeps_padding():
    text = "sub-001_ses-01_task-motor_run-01_meg.ds"
    assert RecordingName.parse(text).name == text


def test_prefix_and_stem():
    name = RecordingName(subject="01", session="01", task="rest", run="2")
    assert name.prefix == "sub-01_ses-01_task-rest_run-2"
    assert name.stem == "sub-01_ses-01_task-rest_run-2_meg"
    assert name.matches("sub-01_ses-01_task-rest_run-2_meg")
    assert name.matches("sub-01_ses-01_task-rest_run-2_meg.ds")
    assert not name.matches("sub-01_ses-01_task-Rest_run-2_meg")


@pytest.mark.parametrize(
    "bad",
    [
        "sub-01_task-rest_meg.ds",  # missing session
        "ses-01_sub-01_task-rest_meg.ds",  # out of order
        "sub-01_ses-01_task-rest_proc-tsss_meg.ds",  # processed
        "sub-01_ses-01_task-rest_foo-1_meg.ds",  # unknown entity
        "sub-01_ses-01_task-rest.ds",  # no suffix
        "sub-0_1_ses-01_task-rest_meg.ds",  # malformed entity
    ],
)
def test_parse_rejects(bad):
    with pytest.raises(RecordingNameError):
        RecordingName.parse(bad)


def test_parse_rejects_paths():
    with pytest.raises(UsageError):
        RecordingName.parse("sub-01/ses-01/meg/sub-01_ses-01_task-rest_meg.ds")


def test_replace_validates_labels():
    name = RecordingName(subject="01", session="01", task="rest")
    assert name.replace(task="motor").task == "motor"
    with pytest.raises(ValueError):
        name.replace(task="rest-state")


def test_noise_detection():
    assert is_noise_label("emptyroom", "rest")
    assert is_noise_label("01", "noise")
    assert is_noise_label("01", "noisePre")
    assert not is_noise_label("01", "rest")
    assert RecordingName.parse("sub-emptyroom_ses-20200131_task-noise_meg.ds").is_noise()


def test_recording_paths(tmp_path: Path):
    name = RecordingName(subject="01", session="02", task="rest")
    path = tmp_path / "sub-01" / "ses-02" / "meg" / name.name
    rec = Recording(root=tmp_path, path=path, name=name)
    assert rec.scans_file == tmp_path / "sub-01" / "ses-02" / "sub-01_ses-02_scans.tsv"
    assert rec.scans_filename == "meg/sub-01_ses-02_task-rest_meg.ds"
    assert rec.relative == "sub-01/ses-02/meg/sub-01_ses-02_task-rest_meg.ds"
    assert rec.sidecar("channels", ".tsv").name == "sub-01_ses-02_task-rest_channels.tsv"
    assert rec.coordsystem_path.name == "sub-01_ses-02_coordsystem.json"
