"""Tests for storesync.lib.diagnostics - periodic stack dumps."""

import time

from storesync.lib.cancellation import CancellationToken
from storesync.lib.diagnostics import StackDumper, format_stacks, write_stack_dump


class TestWriteStackDump:
    def test_numbered_file(self, tmp_path):
        path = write_stack_dump(tmp_path, 7)

        assert path.name == "shop-0007.trace"
        assert "stack dump at" in path.read_text()

    def test_counter_wraps(self, tmp_path):
        assert write_stack_dump(tmp_path, 10003).name == "shop-0003.trace"

    def test_includes_current_thread(self):
        assert "MainThread" in format_stacks()


class TestStackDumper:
    """Tests for the background dumper thread."""

    def test_dumps_until_stopped(self, tmp_path):
        dumper = StackDumper(tmp_path, period=0.01)
        dumper.start()
        deadline = time.monotonic() + 5
        while dumper.dumps < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        dumper.stop()
        dumper.join(timeout=5)

        assert not dumper.is_alive()
        assert (tmp_path / "shop-0000.trace").exists()
        assert (tmp_path / "shop-0001.trace").exists()

    def test_parent_cancel_stops_dumper(self, tmp_path):
        root = CancellationToken()
        dumper = StackDumper(tmp_path, period=60, cancel=root)
        dumper.start()

        root.cancel()
        dumper.join(timeout=5)

        assert not dumper.is_alive()
        assert dumper.dumps == 0

    def test_gives_up_after_repeated_errors(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        dumper = StackDumper(blocker, period=0.001)
        dumper.start()
        dumper.join(timeout=5)

        assert not dumper.is_alive()
        assert dumper.dumps == 0
