import os

import pytest

from payram_setup.lock import LockBusy, run_lock


def test_second_holder_is_refused(tmp_path) -> None:
    path = tmp_path / "info" / ".lock"
    with run_lock(path):
        assert path.read_text(encoding="ascii").strip() == str(os.getpid())
        with pytest.raises(LockBusy, match=str(os.getpid())):
            with run_lock(path):
                pass


def test_lock_is_released_on_exit(tmp_path) -> None:
    path = tmp_path / ".lock"
    with run_lock(path):
        pass
    with run_lock(path):
        pass


def test_lock_is_released_when_body_raises(tmp_path) -> None:
    path = tmp_path / ".lock"
    with pytest.raises(RuntimeError):
        with run_lock(path):
            raise RuntimeError("step failed")
    with run_lock(path):
        pass
