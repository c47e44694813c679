"""
Shared fixtures for the gifcrop test suite.
"""

from __future__ import annotations

import io
import tempfile
from pathlib import Path

import pytest
from PIL import Image

from gifcrop.types import DisposalMode, Placement, RawFrame


def make_raw_frame(color, left=0, top=0, width=10, height=10, delay=100,
                   disposal=DisposalMode.NONE) -> RawFrame:
    """A solid-colour patch at the given placement."""
    if len(color) == 3:
        color = (*color, 255)
    return RawFrame(
        patch=Image.new("RGBA", (width, height), color),
        delay_ms=delay,
        placement=Placement(left=left, top=top, width=width, height=height),
        disposal=disposal,
    )


def make_moving_square_frames(n=10, size=(200, 150), delay=100):
    """*n* full-canvas frames with a square moving across a grey background."""
    w, h = size
    frames = []
    for i in range(n):
        img = Image.new("RGBA", size, (90, 90, 90, 255))
        x = 40 + i * 10
        img.paste((200, 30, 30, 255), (x, h // 2 - 10, x + 20, h // 2 + 10))
        frames.append(RawFrame(
            patch=img,
            delay_ms=delay,
            placement=Placement(0, 0, w, h),
            disposal=DisposalMode.NONE,
        ))
    return frames


def write_gif(frames, durations, disposal=1) -> bytes:
    """Write RGB frames to GIF bytes with Pillow."""
    buf = io.BytesIO()
    frames[0].save(
        buf,
        format="GIF",
        save_all=True,
        append_images=frames[1:],
        duration=durations,
        loop=0,
        disposal=disposal,
    )
    return buf.getvalue()


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory that is cleaned up after the test."""
    with tempfile.TemporaryDirectory(prefix="gifcrop_test_") as d:
        yield Path(d)


@pytest.fixture
def moving_square_frames():
    """Ten 200x150 raw frames, 100 ms each."""
    return make_moving_square_frames()


@pytest.fixture
def square_polygon():
    """A rectangle well inside a 200x150 canvas."""
    return [(20, 20), (180, 20), (180, 130), (20, 130)]


@pytest.fixture
def sample_gif_bytes():
    """A three-frame 60x40 GIF: red canvas with a blue square that moves."""
    frames = []
    for i in range(3):
        img = Image.new("RGB", (60, 40), (255, 0, 0))
        img.paste((0, 0, 255), (5 + i * 15, 10, 15 + i * 15, 20))
        frames.append(img)
    return write_gif(frames, [100, 150, 200])


@pytest.fixture
def sample_gif_path(tmp_dir, sample_gif_bytes):
    path = tmp_dir / "sample.gif"
    path.write_bytes(sample_gif_bytes)
    return path
