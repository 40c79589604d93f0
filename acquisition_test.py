"""Unit tests for acquisition.py."""

from __future__ import annotations

import logging
import sys

import numpy as np
import pytest

from acquisition import DEFAULT_BUFFER_COUNT
from acquisition import accumulate
from acquisition import acquisition_session
from acquisition import default_timeout
from acquisition import finalize_mean
from acquisition import finalize_mean_and_std
from acquisition import mean
from acquisition import measure_sample
from acquisition import process_stream
from acquisition import read_sequence
from acquisition import read_single
from acquisition import stat
from scicam import AcquisitionTimeoutError
from scicam import CameraAdapter
from scicam import InvalidArgumentError
from scicam import SessionActiveError
from scicam import ShapeMismatchError
from scicam import UnsupportedCapabilityError


class FakeSource:
    """Scripted frame source.

    Every frame is written into the same buffer, filled with the 1-based
    number of the wait() call, and stamped at 0.1 s per call.
    """

    def __init__(
        self,
        shape: tuple[int, int] = (4, 5),
        timeout_at: int | None = None,
        fail_at: int | None = None,
        abort_error: Exception | None = None,
        fps: float = 10.0,
        exposure: float = 0.01,
    ) -> None:
        self.buffer = np.zeros(shape, dtype=np.uint16)
        self.timeout_at = timeout_at  # wait() call that times out
        self.fail_at = fail_at  # wait() call that fails with OSError
        self.abort_error = abort_error
        self.fps = fps
        self.exposure = exposure
        self.waits = 0
        self.calls: list[tuple] = []

    def start(self, dtype, nbuffers):
        self.calls.append(("start", np.dtype(dtype), nbuffers))

    def wait(self, timeout):
        self.waits += 1
        self.calls.append(("wait", timeout))
        if self.timeout_at is not None and self.waits >= self.timeout_at:
            raise TimeoutError("no frame")
        if self.fail_at == self.waits:
            raise OSError("device unplugged")
        self.buffer[...] = self.waits
        return self.buffer, 0.1 * self.waits

    def release(self):
        self.calls.append(("release",))

    def stop(self):
        self.calls.append(("stop",))

    def abort(self):
        self.calls.append(("abort",))
        if self.abort_error is not None:
            raise self.abort_error

    def get_speed(self):
        return self.fps, self.exposure

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


class SpeedRecordingSource(FakeSource):
    """FakeSource that also records speed queries."""

    def get_speed(self):
        self.calls.append(("get_speed",))
        return super().get_speed()


class TestDefaultTimeout:
    """Tests for the default per-frame timeout."""

    def test_formula(self):
        src = FakeSource(fps=10.0, exposure=0.01)
        assert default_timeout(src) == pytest.approx(1.0 + 1.01 * (0.1 + 0.01))
        assert default_timeout(src, nframes=5) == pytest.approx(1.0 + 1.01 * (0.5 + 0.01))

    def test_follows_speed_changes(self):
        src = FakeSource(fps=10.0, exposure=0.01)
        before = default_timeout(src)
        src.fps, src.exposure = 1.0, 0.5
        assert default_timeout(src) > before
        assert default_timeout(src) == pytest.approx(1.0 + 1.01 * 1.5)

    def test_used_by_loop(self):
        src = FakeSource(fps=20.0, exposure=0.02)
        read_sequence(src, 2)
        timeouts = [c[1] for c in src.calls if c[0] == "wait"]
        assert timeouts == [pytest.approx(1.0 + 1.01 * (0.05 + 0.02))] * 2

    def test_undeterminable(self):
        class NoSpeed(FakeSource):
            def get_speed(self):
                raise NotImplementedError("get_speed")

        src = NoSpeed()
        with pytest.raises(InvalidArgumentError, match="default timeout"):
            read_sequence(src, 3)
        assert src.calls == []

    def test_explicit_timeout_without_speed(self):
        class NoSpeed(FakeSource):
            def get_speed(self):
                raise NotImplementedError("get_speed")

        frames = read_sequence(NoSpeed(), 2, timeout=0.5)
        assert len(frames) == 2

    def test_invalid_speed(self):
        with pytest.raises(InvalidArgumentError):
            default_timeout(FakeSource(fps=0.0))


class TestReadSequence:
    """Tests for materialized frame sequences."""

    def test_returns_frames_in_order(self):
        src = FakeSource()
        frames = read_sequence(src, 3, np.uint16, timeout=1.0)
        assert [int(f.data[0, 0]) for f in frames] == [1, 2, 3]
        assert [f.index for f in frames] == [0, 1, 2]
        assert [f.timestamp for f in frames] == pytest.approx([0.1, 0.2, 0.3])

    def test_frames_are_independent_copies(self):
        src = FakeSource()
        frames = read_sequence(src, 3, np.uint16, timeout=1.0)
        frames[0].data[0, 0] = 999
        assert frames[1].data[0, 0] == 2
        assert frames[2].data[0, 0] == 3
        assert src.buffer[0, 0] == 3
        assert not np.shares_memory(frames[2].data, src.buffer)

    def test_call_sequence(self):
        src = FakeSource()
        read_sequence(src, 2, np.uint16, timeout=1.0)
        assert src.names() == ["start", "wait", "release", "wait", "release", "abort"]

    def test_buffer_count_independent_of_frame_count(self):
        src = FakeSource()
        read_sequence(src, 50, np.uint16, timeout=1.0)
        assert src.calls[0] == ("start", np.dtype(np.uint16), DEFAULT_BUFFER_COUNT)

    def test_default_element_type(self):
        src = FakeSource()
        frames = read_sequence(src, 1, timeout=1.0)
        assert frames[0].data.dtype == np.uint8
        assert src.calls[0][1] == np.uint8

    def test_skip(self):
        src = FakeSource()
        frames = read_sequence(src, 2, np.uint16, skip=3, timeout=1.0)
        assert src.waits == 5
        assert src.names().count("release") == 5
        assert [int(f.data[0, 0]) for f in frames] == [4, 5]
        assert [f.index for f in frames] == [0, 1]

    def test_truncate_on_timeout(self, caplog):
        src = FakeSource(timeout_at=3)
        with caplog.at_level(logging.WARNING, logger="acquisition"):
            frames = read_sequence(src, 5, np.uint16, timeout=1.0, truncate=True)
        assert len(frames) == 2
        assert [int(f.data[0, 0]) for f in frames] == [1, 2]
        assert "timeout after 2 frame(s)" in caplog.text
        assert src.names()[-2:] == ["wait", "abort"]
        assert src.names().count("abort") == 1

    def test_truncate_quiet(self, caplog):
        src = FakeSource(timeout_at=2)
        with caplog.at_level(logging.WARNING, logger="acquisition"):
            frames = read_sequence(
                src, 5, np.uint16, timeout=1.0, truncate=True, quiet=True
            )
        assert len(frames) == 1
        assert caplog.text == ""

    def test_truncate_on_first_wait(self):
        src = FakeSource(timeout_at=1)
        assert read_sequence(src, 3, timeout=1.0, truncate=True, quiet=True) == []

    def test_timeout_without_truncate(self):
        src = FakeSource(timeout_at=3)
        with pytest.raises(AcquisitionTimeoutError) as exc:
            read_sequence(src, 5, np.uint16, timeout=1.0)
        assert isinstance(exc.value.__cause__, TimeoutError)
        # Nothing but the abort after the failed wait
        names = src.names()
        last_wait = len(names) - 1 - names[::-1].index("wait")
        assert names[last_wait + 1 :] == ["abort"]
        assert src.waits == 3

    def test_other_errors_propagate_unchanged(self):
        src = FakeSource(fail_at=2)
        with pytest.raises(OSError, match="device unplugged"):
            read_sequence(src, 5, timeout=1.0, truncate=True)
        assert src.names() == ["start", "wait", "release", "wait", "abort"]

    def test_teardown_failure_does_not_mask_error(self, caplog):
        src = FakeSource(fail_at=2, abort_error=RuntimeError("abort failed"))
        with caplog.at_level(logging.ERROR, logger="acquisition"):
            with pytest.raises(OSError) as exc:
                read_sequence(src, 5, timeout=1.0)
        assert any("abort failed" in note for note in exc.value.__notes__)
        assert "Abort failed during cleanup" in caplog.text
        assert src.names().count("abort") == 1

    def test_teardown_failure_on_success_is_raised(self):
        src = FakeSource(abort_error=RuntimeError("abort failed"))
        with pytest.raises(RuntimeError, match="abort failed"):
            read_sequence(src, 2, timeout=1.0)

    @pytest.mark.parametrize(
        ("count", "skip", "timeout"),
        [(0, 0, 1.0), (-3, 0, 1.0), (2, -1, 1.0), (2, 0, 0.0), (2, 0, -1.0), (2, 0, float("nan"))],
    )
    def test_invalid_arguments_fail_before_start(self, count, skip, timeout):
        src = FakeSource()
        with pytest.raises(InvalidArgumentError):
            read_sequence(src, count, skip=skip, timeout=timeout)
        assert src.calls == []

    @pytest.mark.parametrize(("count", "skip"), [(0, 0), (-1, 0), (2, -1)])
    def test_invalid_counts_fail_before_speed_query(self, count, skip):
        src = SpeedRecordingSource()
        with pytest.raises(InvalidArgumentError):
            read_sequence(src, count, skip=skip)
        assert src.calls == []

    def test_default_timeout_queries_speed_once(self):
        src = SpeedRecordingSource()
        read_sequence(src, 2)
        assert src.names() == [
            "get_speed", "start", "wait", "release", "wait", "release", "abort"
        ]

    def test_incomplete_source_fails_before_start(self):
        class NoRelease:
            def __init__(self):
                self.started = False

            def start(self, dtype, nbuffers):
                self.started = True

            def wait(self, timeout):
                return np.zeros((1, 1)), 0.0

            def stop(self):
                pass

            def abort(self):
                pass

            def get_speed(self):
                return 10.0, 0.01

        src = NoRelease()
        with pytest.raises(UnsupportedCapabilityError, match="release"):
            read_sequence(src, 1)
        assert not src.started

    def test_second_session_is_usage_error(self):
        src = FakeSource()
        adapter = CameraAdapter(src)
        adapter.start(np.uint8, 4)
        try:
            with pytest.raises(SessionActiveError):
                read_sequence(src, 1, timeout=1.0)
        finally:
            adapter.abort()
        assert len(read_sequence(src, 1, timeout=1.0)) == 1


class TestReadSingle:
    """Tests for single frame reads."""

    def test_single(self):
        frame = read_single(FakeSource(), np.uint16, skip=2, timeout=1.0)
        assert frame.data[0, 0] == 3
        assert frame.index == 0

    def test_timeout_is_fatal(self):
        with pytest.raises(AcquisitionTimeoutError):
            read_single(FakeSource(timeout_at=1), timeout=1.0)


class TestProcessStream:
    """Tests for folding frames."""

    def test_fold(self):
        seen = []

        def fold(state, data, timestamp, ordinal):
            seen.append((int(data[0, 0]), timestamp, ordinal))
            return state + int(data.sum())

        total, n = process_stream(FakeSource(shape=(2, 2)), 3, fold, 0, timeout=1.0)
        assert n == 3
        assert total == 4 * (1 + 2 + 3)
        assert seen == [(1, pytest.approx(0.1), 0), (2, pytest.approx(0.2), 1), (3, pytest.approx(0.3), 2)]

    def test_release_after_each_fold(self):
        src = FakeSource()

        def fold(state, data, timestamp, ordinal):
            state.append(src.names()[-1])
            return state

        calls, _ = process_stream(src, 3, fold, [], timeout=1.0)
        assert calls == ["wait", "wait", "wait"]

    def test_truncated_count(self):
        state, n = process_stream(
            FakeSource(timeout_at=4),
            10,
            lambda s, d, t, i: s + 1,
            0,
            timeout=1.0,
            truncate=True,
            quiet=True,
        )
        assert (state, n) == (3, 3)

    def test_fold_error_aborts(self):
        src = FakeSource()

        def fold(state, data, timestamp, ordinal):
            raise ZeroDivisionError("bad fold")

        with pytest.raises(ZeroDivisionError):
            process_stream(src, 3, fold, None, timeout=1.0)
        assert src.names() == ["start", "wait", "abort"]


class TestAcquisitionSession:
    """Tests for the scoped session."""

    def test_abort_once_on_success(self):
        src = FakeSource()
        with acquisition_session(CameraAdapter(src), np.uint8):
            pass
        assert src.names() == ["start", "abort"]

    def test_abort_once_on_error(self):
        src = FakeSource()
        with pytest.raises(KeyError):
            with acquisition_session(CameraAdapter(src), np.uint8, nbuffers=2):
                raise KeyError("x")
        assert src.names() == ["start", "abort"]
        assert src.calls[0][2] == 2


class TestAccumulate:
    """Tests for streaming sums."""

    def test_zero_frame_leaves_sums_unchanged(self):
        sums = np.full((3, 4), 7.0)
        sums_sq = np.full((3, 4), 49.0)
        accumulate((sums, sums_sq), np.zeros((3, 4), dtype=np.uint16))
        assert np.all(sums == 7.0)
        assert np.all(sums_sq == 49.0)

    def test_same_frame_twice(self):
        frame = np.arange(12, dtype=np.uint16).reshape(3, 4)
        state = (np.zeros((3, 4)), np.zeros((3, 4)))
        accumulate(state, frame)
        accumulate(state, frame)
        np.testing.assert_array_equal(state[0], 2.0 * frame)
        np.testing.assert_array_equal(state[1], 2.0 * frame.astype(np.float64) ** 2)

    def test_single_array_variant(self):
        sums = np.zeros((2, 2))
        out = accumulate(sums, np.ones((2, 2), dtype=np.uint8))
        assert out is sums
        assert np.all(sums == 1.0)

    def test_no_integer_overflow(self):
        frame = np.full((2, 2), 60000, dtype=np.uint16)
        state = (np.zeros((2, 2)), np.zeros((2, 2)))
        accumulate(state, frame)
        assert state[1][0, 0] == 3.6e9

    def test_shape_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            accumulate(np.zeros((3, 4)), np.zeros((4, 3)))
        with pytest.raises(ShapeMismatchError):
            accumulate((np.zeros((3, 4)), np.zeros((3, 5))), np.zeros((3, 4)))


class TestFinalize:
    """Tests for mean and standard deviation."""

    def test_mean(self):
        np.testing.assert_array_equal(finalize_mean(np.array([4.0, 6.0]), 2), [2.0, 3.0])

    def test_identical_frames_have_zero_std(self):
        frame = np.array([[0.1, 1e4 + 0.3], [123456.789, 7.7]])
        state = (np.zeros(frame.shape), np.zeros(frame.shape))
        accumulate(state, frame)
        accumulate(state, frame)
        avg, std = finalize_mean_and_std(state[0], state[1], 2)
        np.testing.assert_allclose(avg, frame)
        assert not np.any(np.isnan(std))
        assert np.all(std == 0.0)

    def test_unbiased_std(self):
        sums = np.array([1.0 + 2.0 + 3.0])
        sums_sq = np.array([1.0 + 4.0 + 9.0])
        avg, std = finalize_mean_and_std(sums, sums_sq, 3)
        assert avg[0] == pytest.approx(2.0)
        assert std[0] == pytest.approx(1.0)

    def test_needs_two_frames(self):
        with pytest.raises(InvalidArgumentError):
            finalize_mean_and_std(np.zeros(1), np.zeros(1), 1)


class TestHelpers:
    """Tests for mean(), stat() and measure_sample()."""

    def test_mean(self):
        avg = mean(FakeSource(), 4, timeout=1.0)
        assert avg.shape == (4, 5)
        assert avg.dtype == np.float64
        assert np.all(avg == 2.5)

    def test_stat(self):
        avg, std, n = stat(FakeSource(), 3, timeout=1.0)
        assert n == 3
        assert np.allclose(avg, 2.0)
        assert np.allclose(std, 1.0)

    def test_stat_truncated(self):
        avg, std, n = stat(FakeSource(timeout_at=4), 10, timeout=1.0, truncate=True, quiet=True)
        assert n == 3
        assert np.allclose(avg, 2.0)

    def test_stat_needs_two_frames(self):
        src = FakeSource()
        with pytest.raises(InvalidArgumentError):
            stat(src, 1, timeout=1.0)
        assert src.calls == []
        with pytest.raises(InvalidArgumentError):
            stat(FakeSource(timeout_at=2), 5, timeout=1.0, truncate=True, quiet=True)

    @pytest.mark.parametrize("dtype", [np.uint8, np.int32, np.complex128])
    def test_accumulator_must_be_floating_point(self, dtype):
        src = FakeSource()
        with pytest.raises(InvalidArgumentError, match="floating point"):
            mean(src, 4, dtype=dtype, timeout=1.0)
        with pytest.raises(InvalidArgumentError, match="floating point"):
            stat(src, 4, dtype=dtype, timeout=1.0)
        assert src.calls == []

    def test_float32_accumulator(self):
        avg, std, n = stat(FakeSource(), 3, dtype=np.float32, timeout=1.0)
        assert avg.dtype == np.float32
        assert n == 3
        assert np.allclose(std, 1.0)

    def test_measure_sample_checks_count_first(self):
        src = SpeedRecordingSource()
        with pytest.raises(InvalidArgumentError):
            measure_sample(src, 0, brightness=1)
        assert src.calls == []

    def test_measure_sample(self):
        sample = measure_sample(FakeSource(exposure=0.01), 2, brightness=1, timeout=1.0)
        assert sample.count == 2 * 20
        assert sample.average == pytest.approx(1.5)
        assert sample.average_squared == pytest.approx(2.5)
        assert sample.brightness == 1
        assert sample.exposure_time == pytest.approx(0.01)

    def test_measure_sample_explicit_exposure(self):
        sample = measure_sample(FakeSource(), 1, brightness=0, exposure_time=0.0, timeout=1.0)
        assert sample.exposure_time == 0.0
        assert sample.average == 1.0


def _run_tests(test_file: str) -> None:
    """Run pytest on this file."""
    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


if __name__ == "__main__":
    _run_tests(__file__)
