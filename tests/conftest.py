"""Pytest configuration for bidscurate tests."""

# No manual modification of ``sys.path`` is required.  The tests rely solely on
# the standard Python import mechanism and the package installation performed by
# the test environment.

import pytest

# Skip the entire suite when the table library is unavailable.
pytest.importorskip("pandas")


@pytest.fixture(autouse=True)
def _log_dir(tmp_path, monkeypatch):
    """Keep JSON logs of in-process CLI calls out of the package folder."""
    monkeypatch.setenv("BIDSCURATE_LOG_DIR", str(tmp_path / "logs"))
