"""Tests for the doom-loop detector."""

import pytest

from tether.doom import DOOM_LOOP_THRESHOLD, DoomLoopDetector

READ_A = ("read", '{"filePath":"a"}')
READ_B = ("read", '{"filePath":"b"}')


class TestDoomLoopDetector:
    def test_threshold_is_three(self):
        assert DOOM_LOOP_THRESHOLD == 3

    def test_three_identical_calls_trip(self):
        d = DoomLoopDetector()
        d.record(*READ_A)
        d.record(*READ_A)
        assert not d.check()
        assert d.would_trip(*READ_A)
        d.record(*READ_A)
        assert d.check()

    def test_different_arguments_do_not_trip(self):
        d = DoomLoopDetector()
        for _ in range(3):
            d.record(*READ_A)
        assert not d.would_trip(*READ_B)
        d.record(*READ_B)
        assert not d.check()
        assert d.snapshot() == [READ_B]

    def test_interleaved_calls_never_trip(self):
        d = DoomLoopDetector()
        for _ in range(5):
            d.record(*READ_A)
            d.record(*READ_B)
            assert not d.check()

    def test_same_name_other_tool_resets(self):
        d = DoomLoopDetector()
        d.record(*READ_A)
        d.record(*READ_A)
        d.record("grep", '{"filePath":"a"}')
        assert not d.would_trip(*READ_A)

    def test_window_is_bounded(self):
        d = DoomLoopDetector()
        for _ in range(10):
            d.record(*READ_A)
        assert len(d.snapshot()) == 3
        assert d.check()

    def test_reset(self):
        d = DoomLoopDetector()
        for _ in range(3):
            d.record(*READ_A)
        d.reset()
        assert not d.check()
        assert d.snapshot() == []

    def test_custom_threshold(self):
        d = DoomLoopDetector(threshold=2)
        d.record(*READ_A)
        assert d.would_trip(*READ_A)

    def test_threshold_below_two_rejected(self):
        with pytest.raises(ValueError):
            DoomLoopDetector(threshold=1)
