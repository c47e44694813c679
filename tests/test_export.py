"""
Tests for the size-constrained export loop.

Most tests drive the loop with a stub encoder whose output size is
proportional to the pixel count, so dimensions and attempt counts are
exactly predictable.  A few run the real Pillow encoder end to end.
"""

from __future__ import annotations

import io
from concurrent.futures import ThreadPoolExecutor

import pytest
from PIL import Image, ImageSequence

import gifcrop.export as export_module
from gifcrop.config import (
    DEFAULT_QUALITY,
    MAX_ATTEMPTS,
    MIN_DIMENSION,
    QUALITY_SCHEDULE,
    SAFETY_MARGIN,
    ExportConfig,
    quality_after_attempt,
)
from gifcrop.exceptions import (
    DegeneratePolygonError,
    EncodeError,
    ExportCancelled,
    FrameValidationError,
    SizeBudgetUnmet,
)
from gifcrop.export import export, export_file, export_request, next_dimensions
from gifcrop.types import ExportRequest, ExportStatus, Placement, RawFrame

from conftest import make_moving_square_frames, make_raw_frame


class StubEncoder:
    """Records every call; emits ``bytes_per_pixel * w * h`` bytes."""

    def __init__(self, bytes_per_pixel=1):
        self.bytes_per_pixel = bytes_per_pixel
        self.calls = []

    def __call__(self, frames, width, height, quality, transparent_color, config=None):
        self.calls.append({
            "width": width,
            "height": height,
            "quality": quality,
            "delays": [delay for _, delay in frames],
            "sizes": {bitmap.size for bitmap, _ in frames},
            "key": transparent_color,
        })
        return b"\x00" * (self.bytes_per_pixel * width * height)


# ---------------------------------------------------------------------------
# Policy constants
# ---------------------------------------------------------------------------

class TestPolicyConstants:
    def test_values(self):
        assert MIN_DIMENSION == 32
        assert MAX_ATTEMPTS == 5
        assert SAFETY_MARGIN == 0.9
        assert DEFAULT_QUALITY == 10
        assert QUALITY_SCHEDULE == {1: 15, 2: 20, 3: 30}

    def test_quality_schedule(self):
        assert [quality_after_attempt(n) for n in range(1, 6)] == [15, 20, 30, 30, 30]


class TestNextDimensions:
    def test_sqrt_of_ratio_with_margin(self):
        assert next_dimensions(200, 150, 30000, 10000, 0.9, 32) == (109, 82)

    def test_clamped_to_floor(self):
        assert next_dimensions(200, 150, 30000, 100, 0.9, 32) == (32, 32)

    def test_small_side_is_never_enlarged(self):
        assert next_dimensions(20, 300, 6000, 1, 0.9, 32) == (20, 32)


# ---------------------------------------------------------------------------
# Loop behaviour with a stub encoder
# ---------------------------------------------------------------------------

class TestExportLoop:
    def test_no_budget_accepts_first_attempt(self, moving_square_frames, square_polygon):
        enc = StubEncoder()
        result = export(moving_square_frames, square_polygon, 200, 150, encoder=enc)
        assert result.status is ExportStatus.ACCEPTED
        assert len(enc.calls) == 1
        assert (result.width, result.height) == (200, 150)
        assert result.quality == DEFAULT_QUALITY
        assert result.size_bytes == 200 * 150
        assert result.warnings == []

    def test_target_size_is_used(self, moving_square_frames, square_polygon):
        enc = StubEncoder()
        export(moving_square_frames, square_polygon, 200, 150,
               target_width=100, target_height=50, encoder=enc)
        assert enc.calls[0]["sizes"] == {(100, 50)}

    def test_converges_after_one_shrink(self, moving_square_frames, square_polygon):
        enc = StubEncoder()
        result = export(moving_square_frames, square_polygon, 200, 150,
                        size_budget_bytes=10000, encoder=enc)
        assert result.status is ExportStatus.ACCEPTED
        assert [(c["width"], c["height"]) for c in enc.calls] == [(200, 150), (109, 82)]
        assert [c["quality"] for c in enc.calls] == [10, 15]
        assert result.size_bytes == 109 * 82
        assert result.budget_met

    def test_gives_up_at_the_floor(self, moving_square_frames, square_polygon):
        enc = StubEncoder()
        result = export(moving_square_frames, square_polygon, 200, 150,
                        size_budget_bytes=100, encoder=enc)
        assert result.status is ExportStatus.GAVE_UP
        assert len(enc.calls) == MAX_ATTEMPTS
        assert [(c["width"], c["height"]) for c in enc.calls] == (
            [(200, 150)] + [(32, 32)] * 4)
        assert [c["quality"] for c in enc.calls] == [10, 15, 20, 30, 30]
        assert result.size_bytes == 32 * 32
        assert len(result.warnings) == 1

    def test_tiny_source_is_best_effort(self):
        raw = [make_raw_frame((200, 0, 0), width=20, height=20) for _ in range(3)]
        enc = StubEncoder()
        result = export(raw, [(2, 2), (18, 2), (10, 18)], 20, 20,
                        size_budget_bytes=1, encoder=enc)
        assert result.status is ExportStatus.BEST_EFFORT
        assert len(enc.calls) == 1
        assert (result.width, result.height) == (20, 20)
        assert result.data
        assert len(result.warnings) == 1

    def test_only_final_attempt_keeps_data(self, moving_square_frames, square_polygon):
        result = export(moving_square_frames, square_polygon, 200, 150,
                        size_budget_bytes=100, encoder=StubEncoder())
        assert all(a.data == b"" for a in result.attempts[:-1])
        assert result.attempts[-1].data == result.data
        assert [a.attempt_number for a in result.attempts] == [1, 2, 3, 4, 5]
        assert all(a.size_bytes > 0 for a in result.attempts)

    def test_raise_for_budget(self, moving_square_frames, square_polygon):
        missed = export(moving_square_frames, square_polygon, 200, 150,
                        size_budget_bytes=100, encoder=StubEncoder())
        with pytest.raises(SizeBudgetUnmet) as excinfo:
            missed.raise_for_budget()
        assert excinfo.value.size_bytes == 32 * 32
        assert excinfo.value.budget_bytes == 100

        met = export(moving_square_frames, square_polygon, 200, 150,
                     size_budget_bytes=10 ** 9, encoder=StubEncoder())
        met.raise_for_budget()

    def test_every_frame_is_emitted(self, moving_square_frames, square_polygon):
        enc = StubEncoder()
        export(moving_square_frames, square_polygon, 200, 150, encoder=enc)
        assert enc.calls[0]["delays"] == [100] * 10

    def test_key_colour_is_passed_to_encoder(self, moving_square_frames, square_polygon):
        enc = StubEncoder()
        export(moving_square_frames, square_polygon, 200, 150, encoder=enc,
               config=ExportConfig(key_color=(255, 0, 255)))
        assert enc.calls[0]["key"] == (255, 0, 255)

    @pytest.mark.parametrize("stride,delays", [
        (2, [200] * 5),
        (3, [300, 300, 300, 100]),
        (10, [1000]),
    ])
    def test_frame_stride_sums_delays(self, moving_square_frames, square_polygon,
                                      stride, delays):
        enc = StubEncoder()
        export(moving_square_frames, square_polygon, 200, 150, encoder=enc,
               config=ExportConfig(frame_stride=stride))
        assert enc.calls[0]["delays"] == delays

    def test_reconstruction_runs_once(self, monkeypatch, moving_square_frames,
                                      square_polygon):
        calls = []
        real = export_module.reconstruct

        def counting(*args, **kwargs):
            calls.append(args)
            return real(*args, **kwargs)

        monkeypatch.setattr(export_module, "reconstruct", counting)
        enc = StubEncoder()
        export(moving_square_frames, square_polygon, 200, 150,
               size_budget_bytes=100, encoder=enc)
        assert len(enc.calls) == 5
        assert len(calls) == 1

    def test_progress_is_monotonic_per_attempt(self, moving_square_frames, square_polygon):
        reports = []
        export(moving_square_frames, square_polygon, 200, 150,
               size_budget_bytes=10000, progress=reports.append, encoder=StubEncoder())
        per_attempt = len(moving_square_frames) + 1
        assert len(reports) == 2 * per_attempt
        for start in range(0, len(reports), per_attempt):
            chunk = reports[start:start + per_attempt]
            assert chunk == sorted(chunk)
            assert chunk[0] == 0.0
            assert chunk[-1] == 1.0
            assert all(0.0 <= p <= 1.0 for p in chunk)

    def test_idempotent(self, moving_square_frames, square_polygon):
        first = export(moving_square_frames, square_polygon, 200, 150,
                       size_budget_bytes=100, encoder=StubEncoder())
        second = export(moving_square_frames, square_polygon, 200, 150,
                        size_budget_bytes=100, encoder=StubEncoder())
        assert first.data == second.data
        assert ([a.summary() for a in first.attempts]
                == [a.summary() for a in second.attempts])

    def test_input_frames_are_not_mutated(self, moving_square_frames, square_polygon):
        before = [f.patch.tobytes() for f in moving_square_frames]
        export(moving_square_frames, square_polygon, 200, 150, encoder=StubEncoder())
        assert [f.patch.tobytes() for f in moving_square_frames] == before


class TestCancellation:
    def test_cancel_between_attempts(self, moving_square_frames, square_polygon):
        enc = StubEncoder()
        with pytest.raises(ExportCancelled):
            export(moving_square_frames, square_polygon, 200, 150,
                   size_budget_bytes=100, encoder=enc, should_cancel=lambda: True)
        assert len(enc.calls) == 1

    def test_cancel_after_second_attempt(self, moving_square_frames, square_polygon):
        polls = []

        def should_cancel():
            polls.append(True)
            return len(polls) >= 2

        enc = StubEncoder()
        with pytest.raises(ExportCancelled):
            export(moving_square_frames, square_polygon, 200, 150,
                   size_budget_bytes=100, encoder=enc, should_cancel=should_cancel)
        assert len(enc.calls) == 2

    def test_not_polled_when_accepted(self, moving_square_frames, square_polygon):
        polls = []
        result = export(moving_square_frames, square_polygon, 200, 150,
                        encoder=StubEncoder(),
                        should_cancel=lambda: polls.append(True) or True)
        assert result.status is ExportStatus.ACCEPTED
        assert polls == []


class TestErrors:
    def test_degenerate_polygon(self, moving_square_frames):
        enc = StubEncoder()
        with pytest.raises(DegeneratePolygonError):
            export(moving_square_frames, [(0, 0), (10, 10)], 200, 150, encoder=enc)
        assert enc.calls == []

    def test_invalid_frames(self, square_polygon):
        raw = [make_raw_frame((255, 0, 0), left=195, width=10, height=10)]
        with pytest.raises(FrameValidationError) as excinfo:
            export(raw, square_polygon, 200, 150, encoder=StubEncoder())
        assert excinfo.value.messages

    def test_patch_size_mismatch(self, square_polygon):
        raw = [RawFrame(patch=Image.new("RGBA", (5, 5)), delay_ms=100,
                        placement=Placement(0, 0, 10, 10))]
        with pytest.raises(FrameValidationError):
            export(raw, square_polygon, 200, 150, encoder=StubEncoder())

    def test_empty_frames(self, square_polygon):
        with pytest.raises(FrameValidationError):
            export([], square_polygon, 200, 150, encoder=StubEncoder())

    def test_encoder_error_aborts(self, moving_square_frames, square_polygon):
        def failing(*args, **kwargs):
            raise EncodeError("rejected")

        with pytest.raises(EncodeError):
            export(moving_square_frames, square_polygon, 200, 150, encoder=failing)

    @pytest.mark.parametrize("budget", [0, -10])
    def test_non_positive_budget(self, moving_square_frames, square_polygon, budget):
        with pytest.raises(ValueError):
            export(moving_square_frames, square_polygon, 200, 150,
                   size_budget_bytes=budget, encoder=StubEncoder())

    def test_bad_stride(self, moving_square_frames, square_polygon):
        with pytest.raises(ValueError):
            export(moving_square_frames, square_polygon, 200, 150,
                   encoder=StubEncoder(), config=ExportConfig(frame_stride=0))


class TestExportRequest:
    def test_request_overrides_stride_and_quality(self, moving_square_frames,
                                                  square_polygon):
        request = ExportRequest(source_width=200, source_height=150,
                                target_width=100, target_height=75,
                                frame_stride=2, quality=4)
        enc = StubEncoder()
        result = export_request(moving_square_frames, square_polygon, request,
                                encoder=enc)
        assert result.status is ExportStatus.ACCEPTED
        assert enc.calls[0]["quality"] == 4
        assert enc.calls[0]["delays"] == [200] * 5
        assert enc.calls[0]["sizes"] == {(100, 75)}

    def test_request_budget(self, moving_square_frames, square_polygon):
        request = ExportRequest(200, 150, 200, 150, size_budget_bytes=10000)
        result = export_request(moving_square_frames, square_polygon, request,
                                encoder=StubEncoder())
        assert (result.width, result.height) == (109, 82)


class TestConcurrency:
    def test_parallel_exports_match_sequential(self):
        def run():
            return export(make_moving_square_frames(n=4, size=(80, 60)),
                          [(10, 10), (70, 10), (70, 50), (10, 50)], 80, 60).data

        sequential = run()
        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: run(), range(2)))
        assert results == [sequential, sequential]


# ---------------------------------------------------------------------------
# Real encoder
# ---------------------------------------------------------------------------

class TestEndToEnd:
    def test_unconstrained_export(self, moving_square_frames, square_polygon):
        result = export(moving_square_frames, square_polygon, 200, 150)
        assert result.status is ExportStatus.ACCEPTED
        img = Image.open(io.BytesIO(result.data))
        assert img.size == (200, 150)
        assert img.n_frames == 10
        assert [f.info["duration"] for f in ImageSequence.Iterator(img)] == [100] * 10

        img.seek(0)
        rgba = img.convert("RGBA")
        # Outside the polygon is transparent; the square in frame 0 survives.
        assert rgba.getpixel((5, 5))[3] == 0
        assert rgba.getpixel((50, 75)) == (200, 30, 30, 255)
        assert rgba.getpixel((100, 40)) == (90, 90, 90, 255)

    def test_static_source_keeps_every_frame(self, square_polygon):
        frames = [make_raw_frame((90, 90, 90), width=200, height=150, delay=100)] * 10
        result = export(frames, square_polygon, 200, 150)
        img = Image.open(io.BytesIO(result.data))
        assert img.n_frames == 10
        assert [f.info["duration"] for f in ImageSequence.Iterator(img)] == [100] * 10

    def test_changes_outside_polygon_keep_every_frame(self, square_polygon):
        frames = [make_raw_frame((90, 90, 90), width=200, height=150, delay=100)]
        for i in range(4):
            # Corner patches lie entirely outside the square polygon.
            frames.append(make_raw_frame((20 * i, 0, 200), left=0, top=0,
                                         width=10, height=10, delay=60))
        result = export(frames, square_polygon, 200, 150)
        img = Image.open(io.BytesIO(result.data))
        assert img.n_frames == 5
        assert [f.info["duration"] for f in ImageSequence.Iterator(img)] == [100, 60, 60, 60, 60]

    def test_one_byte_budget_gives_up(self, moving_square_frames, square_polygon):
        result = export(moving_square_frames, square_polygon, 200, 150,
                        size_budget_bytes=1)
        assert result.status is ExportStatus.GAVE_UP
        assert len(result.attempts) == MAX_ATTEMPTS
        assert [a.quality for a in result.attempts] == [10, 15, 20, 30, 30]
        assert (result.attempts[1].target_width, result.attempts[1].target_height) == (32, 32)
        assert all(a.target_width >= 32 and a.target_height >= 32
                   for a in result.attempts)
        assert result.data

    def test_budget_result_is_consistent(self, moving_square_frames, square_polygon):
        unconstrained = export(moving_square_frames, square_polygon, 200, 150)
        budget = unconstrained.size_bytes // 2
        result = export(moving_square_frames, square_polygon, 200, 150,
                        size_budget_bytes=budget)
        assert len(result.attempts) >= 2
        widths = [a.target_width for a in result.attempts]
        assert widths == sorted(widths, reverse=True)
        if result.status is ExportStatus.ACCEPTED:
            assert result.size_bytes <= budget
        else:
            assert result.status is ExportStatus.GAVE_UP

    def test_export_file(self, tmp_dir, sample_gif_path):
        out = tmp_dir / "out.gif"
        result = export_file(sample_gif_path, out)
        assert out.read_bytes() == result.data
        img = Image.open(out)
        assert img.size == (60, 40)
        assert img.n_frames == 3
        # The default diamond leaves the corners transparent.
        assert img.convert("RGBA").getpixel((0, 0))[3] == 0

    def test_export_file_with_polygon_and_size(self, tmp_dir, sample_gif_path):
        out = tmp_dir / "small.gif"
        result = export_file(sample_gif_path, out,
                             polygon=[(0, 0), (60, 0), (60, 40), (0, 40)],
                             target_width=30, target_height=20)
        assert (result.width, result.height) == (30, 20)
        assert Image.open(out).size == (30, 20)
