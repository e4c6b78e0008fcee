from __future__ import annotations

import signal
from pathlib import Path
from unittest.mock import patch

from fetchdata.core.subprocess_tracker import SubprocessTracker


class TestSubprocessTracker:
    def test_track_persists_pids(self, tmp_path: Path):
        pid_file = tmp_path / "children.pid"
        tracker = SubprocessTracker(pid_file)
        tracker.track(111)
        tracker.track(222)
        assert pid_file.read_text().split() == ["111", "222"]
        tracker.untrack(111)
        assert pid_file.read_text().split() == ["222"]

    def test_kill_all_signals_and_clears(self):
        tracker = SubprocessTracker()
        tracker.track(111)
        with patch("fetchdata.core.subprocess_tracker.os.kill") as kill:
            tracker.kill_all()
        kill.assert_called_once_with(111, signal.SIGTERM)
        assert tracker.pids == frozenset()

    def test_kill_all_ignores_dead_pids(self):
        tracker = SubprocessTracker()
        tracker.track(111)
        with patch("fetchdata.core.subprocess_tracker.os.kill", side_effect=ProcessLookupError):
            tracker.kill_all()
        assert tracker.pids == frozenset()

    def test_cleanup_stale(self, tmp_path: Path):
        pid_file = tmp_path / "children.pid"
        pid_file.write_text("111\nnot-a-pid\n\n222\n")
        tracker = SubprocessTracker(pid_file)
        with patch("fetchdata.core.subprocess_tracker.os.kill") as kill:
            assert tracker.cleanup_stale() == 2
        assert kill.call_count == 2
        assert not pid_file.exists()

    def test_cleanup_stale_without_file(self, tmp_path: Path):
        assert SubprocessTracker(tmp_path / "missing.pid").cleanup_stale() == 0
        assert SubprocessTracker().cleanup_stale() == 0

    def test_install_atexit_once(self):
        tracker = SubprocessTracker()
        with patch("fetchdata.core.subprocess_tracker.atexit.register") as register:
            tracker.install_atexit()
            tracker.install_atexit()
        register.assert_called_once_with(tracker.kill_all)
