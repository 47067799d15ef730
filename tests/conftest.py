"""
Test Configuration
==================

Pytest fixtures for the GIF pixel converter: small GIFs written with Pillow
and an in-memory frame source that can be told to fail on chosen frames.
"""

import numpy as np
import pytest
from PIL import Image

from convert_pixels import FrameDecodeError, GifMetadata


class FakeFrameSource:
    """Frame source backed by a list of arrays. Frames in fail_on raise FrameDecodeError."""

    def __init__(self, frames, fail_on=()):
        self.frames = [np.asarray(frame, dtype=np.uint8) for frame in frames]
        self.fail_on = set(fail_on)
        self.requested = []

    def get_frame(self, index):
        self.requested.append(index)
        if index in self.fail_on:
            raise FrameDecodeError(index, "corrupt frame data")
        return self.frames[index]


def solid_frame(width, height, color, alpha=None):
    channels = 3 if alpha is None else 4
    frame = np.zeros((height, width, channels), dtype=np.uint8)
    frame[..., :3] = color
    if alpha is not None:
        frame[..., 3] = alpha
    return frame


def metadata_for(frames, frame_duration=100):
    height, width = frames[0].shape[:2]
    return GifMetadata(
        total_frames=len(frames),
        frame_duration=frame_duration,
        width=width,
        height=height,
        total_duration=frame_duration * len(frames),
    )


@pytest.fixture
def scenario_frame():
    """2x2 frame from the reference example, row-major."""
    return np.array(
        [
            [(10, 20, 30), (200, 10, 5)],
            [(0, 0, 0), (255, 255, 255)],
        ],
        dtype=np.uint8,
    )


@pytest.fixture
def make_gif(tmp_path):
    """Write frames (list of (H, W, 3) arrays) to a GIF and return its path."""

    def _make_gif(frames, durations=100, name="input.gif"):
        path = tmp_path / name
        images = [Image.fromarray(np.asarray(frame, dtype=np.uint8), 'RGB') for frame in frames]
        images[0].save(
            path,
            save_all=True,
            append_images=images[1:],
            duration=durations,
            loop=0,
        )
        return path

    return _make_gif


@pytest.fixture
def color_frames():
    """Ten distinct 4x3 solid frames using colors that survive GIF palettes exactly."""
    colors = [
        (0, 0, 0), (255, 255, 255), (255, 0, 0), (0, 255, 0), (0, 0, 255),
        (255, 255, 0), (0, 255, 255), (255, 0, 255), (51, 102, 153), (204, 153, 51),
    ]
    return [solid_frame(4, 3, color) for color in colors]


@pytest.fixture
def truncated_gif(tmp_path, make_gif):
    """Six 32x32 noise frames with the byte stream cut halfway through the last frame.

    Returns (path, frame count, width, height).
    """
    rng = np.random.default_rng(3)
    frames = [rng.integers(0, 256, size=(32, 32, 3), dtype=np.uint8) for _ in range(6)]
    full = make_gif(frames, name="full.gif").read_bytes()
    # frames are written in order, so the five-frame file minus its trailer
    # ends where the sixth frame starts
    last_frame_start = len(make_gif(frames[:5], name="head.gif").read_bytes()) - 1
    path = tmp_path / "truncated.gif"
    path.write_bytes(full[:(last_frame_start + len(full)) // 2])
    return path, len(frames), 32, 32
