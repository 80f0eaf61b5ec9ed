import os
import subprocess
import sys
import time

import psutil
import pytest

from endpoint_doctor.config import MB
from endpoint_doctor.system_control import (
    LocalSystemControl,
    TrashOutcome,
    normalize_process_name,
    path_size,
    run_command,
)

posix_only = pytest.mark.skipif(os.name == "nt", reason="freedesktop trash layout")


def _fill(path, size):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as fh:
        fh.truncate(size)


@posix_only
def test_missing_trash_is_already_empty(tmp_path):
    result = LocalSystemControl(trash_dir=tmp_path / "Trash").empty_trash()
    assert result.outcome is TrashOutcome.ALREADY_EMPTY
    assert result.freed_bytes == 0


@posix_only
def test_empty_files_dir_is_already_empty(tmp_path):
    (tmp_path / "Trash" / "files").mkdir(parents=True)
    result = LocalSystemControl(trash_dir=tmp_path / "Trash").empty_trash()
    assert result.outcome is TrashOutcome.ALREADY_EMPTY


@posix_only
def test_trash_is_emptied_with_info_files(tmp_path):
    trash = tmp_path / "Trash"
    _fill(trash / "files" / "report.pdf", 2 * MB)
    _fill(trash / "files" / "old_project" / "data.bin", 3 * MB)
    (trash / "info").mkdir()
    (trash / "info" / "report.pdf.trashinfo").write_text("[Trash Info]\n", encoding="utf-8")

    result = LocalSystemControl(trash_dir=trash).empty_trash()

    assert result.outcome is TrashOutcome.EMPTIED
    assert result.freed_bytes == 5 * MB
    assert list((trash / "files").iterdir()) == []
    assert list((trash / "info").iterdir()) == []


def test_path_size_counts_nested_files(tmp_path):
    _fill(tmp_path / "a" / "one", 1000)
    _fill(tmp_path / "a" / "b" / "two", 500)
    assert path_size(tmp_path / "a") == 1500
    assert path_size(tmp_path / "a" / "one") == 1000
    assert path_size(tmp_path / "missing") == 0


def test_normalize_process_name():
    assert normalize_process_name(" Explorer.EXE ") == "explorer"
    assert normalize_process_name("nautilus") == "nautilus"


def test_run_command_reports_failure_without_raising():
    rc, out, err = run_command([sys.executable, "-c", "print('hi')"])
    assert rc == 0
    assert out.strip() == "hi"
    rc, _, err = run_command(["definitely-not-a-real-binary-xyz"])
    assert rc == 1
    assert err


def test_find_processes_includes_current_interpreter():
    name = psutil.Process(os.getpid()).name()
    assert os.getpid() in LocalSystemControl().find_processes(name)


def test_kill_tree_kills_children():
    code = "import subprocess, sys, time; subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']); time.sleep(60)"
    parent = subprocess.Popen([sys.executable, "-c", code])
    try:
        proc = psutil.Process(parent.pid)
        for _ in range(50):
            if proc.children(recursive=True):
                break
            time.sleep(0.1)
        child_pids = [c.pid for c in proc.children(recursive=True)]

        killed = LocalSystemControl(kill_wait=5.0).kill_tree(parent.pid)

        assert killed >= 1
        parent.wait(timeout=5)
        assert parent.returncode is not None
        assert child_pids
    finally:
        if parent.poll() is None:
            parent.kill()


def test_kill_tree_of_missing_process():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait(timeout=10)
    assert LocalSystemControl().kill_tree(proc.pid) == 0


def test_wait_for_exit_returns_nothing_for_exited_processes():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait(timeout=10)
    assert LocalSystemControl().wait_for_exit([proc.pid], 0.1) == []
