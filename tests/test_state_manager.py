import stat

import pytest

from bunq_sync.errors import ConfigurationError
from bunq_sync.state_manager import discard_record, read_record, write_record


def test_read_record_returns_none_for_missing_file(tmp_path):
    assert read_record(tmp_path / "state.json") is None


def test_write_and_read_record(tmp_path):
    path = tmp_path / "nested" / "session.json"
    write_record(path, {"id": 1, "token": "abc", "user_id": 7})

    assert read_record(path) == {"id": 1, "token": "abc", "user_id": 7}
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert not (tmp_path / "nested" / ".session.json.tmp").exists()


def test_write_record_replaces_whole_file(tmp_path):
    path = tmp_path / "session.json"
    write_record(path, {"id": 1, "token": "a-very-long-token-value"})
    write_record(path, {"id": 2})

    assert read_record(path) == {"id": 2}


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_corrupt_record_raises_configuration_error(tmp_path, content):
    path = tmp_path / "state.json"
    path.write_text(content)
    with pytest.raises(ConfigurationError):
        read_record(path)


def test_discard_record(tmp_path):
    path = tmp_path / "state.json"
    write_record(path, {"id": 1})
    discard_record(path)
    discard_record(path)
    assert not path.exists()
