#!/usr/bin/env python3
"""
Module to read, verify and render pixels.bin animation files.

pixels.bin layout:
- 6-byte header: width, height, frame duration (ms), each uint16 little-endian
- raw frames of width*height*3 bytes (R,G,B, row-major), no per-frame framing

Usage:
    python render_pixels.py pixels.bin output_dir [--gif]
"""
import os
import struct
import numpy as np
from PIL import Image
from dataclasses import dataclass, field
import argparse


HEADER_FORMAT = '<HHH'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
SPOT_CHECK_BYTES = 30


class VerificationError(Exception):
    """Problem found while checking a written file. Reported, never raised."""


class HeaderMismatchError(VerificationError):
    pass


class TruncatedFileError(VerificationError):
    pass


@dataclass
class VerificationReport:
    path: str
    header: dict = None
    file_size: int = 0
    errors: list = field(default_factory=list)
    first_frame_match: bool = None

    @property
    def ok(self):
        return not self.errors and self.first_frame_match is not False

    def describe(self):
        lines = []
        if self.header is not None:
            lines.append(
                f"Header: {self.header['width']}x{self.header['height']}, "
                f"{self.header['frame_duration']}ms per frame"
            )
        lines.append(f"File size: {self.file_size} bytes")
        if self.first_frame_match is None:
            lines.append("First frame check: inconclusive (no reference frame)")
        else:
            lines.append(f"First frame check: {'match' if self.first_frame_match else 'MISMATCH'}")
        return lines


def parse_header(f):
    """Parse the 6-byte header."""
    data = f.read(HEADER_SIZE)
    if len(data) != HEADER_SIZE:
        raise ValueError(f"File too short for header (expected {HEADER_SIZE} bytes, got {len(data)})")
    width, height, frame_duration = struct.unpack(HEADER_FORMAT, data)
    return {
        'width': width,
        'height': height,
        'frame_duration': frame_duration,
    }


def iter_frames(f, header, log=print):
    """Yield (height, width, 3) uint8 arrays until the end of the file."""
    width, height = header['width'], header['height']
    frame_size = width * height * 3
    if frame_size == 0:
        return
    while True:
        data = f.read(frame_size)
        if not data:
            break
        if len(data) != frame_size:
            log(f"Warning: ignoring incomplete trailing frame ({len(data)} of {frame_size} bytes)")
            break
        yield np.frombuffer(data, dtype=np.uint8).reshape(height, width, 3)


def read_frames(input_file, log=print):
    """Read a pixels.bin file. Returns (header, list of frame arrays)."""
    with open(input_file, 'rb') as f:
        header = parse_header(f)
        frames = list(iter_frames(f, header, log))
    return header, frames


def verify_pixels_bin(path, metadata, first_frame=None, expected_frames=None):
    """Sanity-check a finished pixels.bin against the metadata it was written from.

    Checks:
    - header width/height equal metadata.width/metadata.height
    - file is at least half of one header plus one frame long
    - when expected_frames is given, the size is exactly header + expected_frames frames
    - the first 30 bytes of frame 0 equal first_frame[:30] (skipped when first_frame is None)

    Problems are collected in the returned report; nothing is raised for them
    and the file is left untouched.
    """
    report = VerificationReport(path=str(path))
    report.file_size = os.path.getsize(path)
    with open(path, 'rb') as f:
        try:
            report.header = parse_header(f)
        except ValueError as exc:
            report.errors.append(TruncatedFileError(str(exc)))
            return report
        lead = f.read(SPOT_CHECK_BYTES)

    width, height = metadata.width, metadata.height
    if report.header['width'] != width or report.header['height'] != height:
        report.errors.append(HeaderMismatchError(
            f"Header is {report.header['width']}x{report.header['height']}, expected {width}x{height}"
        ))

    frame_size = width * height * 3
    min_size = (frame_size + HEADER_SIZE) / 2
    if report.file_size < min_size:
        report.errors.append(TruncatedFileError(
            f"File is {report.file_size} bytes, expected at least {min_size:.0f}"
        ))
    elif expected_frames is not None and report.file_size != HEADER_SIZE + expected_frames * frame_size:
        report.errors.append(TruncatedFileError(
            f"File is {report.file_size} bytes, expected {HEADER_SIZE + expected_frames * frame_size} "
            f"for {expected_frames} frames"
        ))

    if first_frame is not None:
        expected = bytes(first_frame[:SPOT_CHECK_BYTES])
        report.first_frame_match = lead[:len(expected)] == expected

    return report


def render_pixels_frames(input_file, output_dir, progress_callback=None, gif=False, log=print):
    """
    Render every frame of a pixels.bin file to PNG.

    Args:
        input_file: Path to the .bin file
        output_dir: Directory to save output PNGs
        progress_callback: Optional callback(current, total, message)
        gif: Also write preview.gif using the header's frame duration
        log: callable used for console messages
    """
    os.makedirs(output_dir, exist_ok=True)

    images = []
    frame_idx = 0
    with open(input_file, 'rb') as f:
        header = parse_header(f)
        log(f"Header: {header}")

        for frame in iter_frames(f, header, log):
            img = Image.fromarray(frame, 'RGB')
            output_path = os.path.join(output_dir, f'frame_{frame_idx:04d}.png')
            img.save(output_path)
            log(f"Saved {output_path}")
            if gif:
                images.append(img)
            frame_idx += 1

            if progress_callback:
                progress_callback(frame_idx, -1, f"Rendered frame {frame_idx}")

    if gif and images:
        gif_path = os.path.join(output_dir, 'preview.gif')
        images[0].save(
            gif_path,
            save_all=True,
            append_images=images[1:],
            duration=max(header['frame_duration'], 10),
            loop=0,
        )
        log(f"Saved {gif_path}")

    log(f"Done. {frame_idx} frames rendered.")
    return frame_idx


def main(argv=None):
    parser = argparse.ArgumentParser(description="Render pixels.bin animation files to PNG frames")
    parser.add_argument('input', help='Input binary file (.bin)')
    parser.add_argument('output_dir', help='Output directory for PNG frames')
    parser.add_argument('--gif', action='store_true', help='Also write an animated preview.gif')
    args = parser.parse_args(argv)

    render_pixels_frames(args.input, args.output_dir, gif=args.gif)


if __name__ == "__main__":
    main()
