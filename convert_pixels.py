#!/usr/bin/env python3
"""
Convert an animated GIF into a raw RGB pixel-sequence file (pixels.bin).

Output layout (little-endian):
- offset 0: uint16 width
- offset 2: uint16 height
- offset 4: uint16 frame duration in ms
- offset 6: N frames, width*height*3 bytes each, R,G,B per pixel, row-major

Usage:
    python convert_pixels.py --input ejemplo.gif --output-bin pixels.bin --palette "game boy" --percent 50
"""
from PIL import Image
import struct
import time
import os
import numpy as np
from dataclasses import dataclass, field
import argparse
import sys
from sklearn.cluster import KMeans

from render_pixels import HEADER_FORMAT, HEADER_SIZE, verify_pixels_bin


DEFAULT_FRAME_DURATION = 100  # ms, used when the GIF declares a zero delay
MAX_HEADER_VALUE = 0xFFFF
PALETTE_CHUNK_PIXELS = 65536


class PixelConversionError(Exception):
    """Base class for conversion failures."""


class EmptyInputError(PixelConversionError, ValueError):
    """The input has no frames to convert."""


class InvalidPaletteError(PixelConversionError, ValueError):
    """Unknown palette choice or a palette without colors."""


class FrameError(PixelConversionError):
    """A single frame could not be converted. The run continues without it."""

    def __init__(self, index, message):
        super().__init__(f"frame {index + 1}: {message}")
        self.index = index


class FrameDecodeError(FrameError):
    pass


class FrameIOError(FrameError):
    pass


@dataclass(frozen=True)
class Palette:
    """Named set of reference colors. colors=None keeps the original colors."""
    name: str
    colors: tuple = None


PALETTES = [
    Palette("Original", None),
    Palette("Game Boy", ((0, 0, 0), (85, 85, 85), (170, 170, 170), (255, 255, 255))),
    Palette("Game Boy Color", ((0, 0, 0), (34, 59, 19), (68, 116, 34), (102, 170, 68), (170, 238, 136))),
    Palette("SNES", ((0, 0, 0), (94, 75, 153), (255, 255, 255), (222, 190, 153), (255, 94, 77))),
    Palette("N64", ((0, 0, 0), (89, 157, 220), (252, 239, 82), (252, 127, 0), (220, 38, 127))),
    Palette("Retro Sunset", ((255, 94, 77), (189, 46, 63), (95, 15, 64), (20, 12, 48))),
]


@dataclass(frozen=True)
class GifMetadata:
    total_frames: int
    frame_duration: int
    width: int
    height: int
    total_duration: int


@dataclass(frozen=True)
class FrameSelection:
    """Which source frames are kept and how long each one is shown.

    Attributes:
        total_frames: number of frames in the source
        skip_stride: spacing between kept frame indices (>= 1)
        selected_count: ceil(total_frames / skip_stride)
        output_frame_duration: total duration spread evenly over the kept frames (ms)
    """
    total_frames: int
    skip_stride: int
    selected_count: int
    output_frame_duration: int

    @property
    def indices(self):
        return range(0, self.total_frames, self.skip_stride)


@dataclass
class ConversionResult:
    output_bin: str
    metadata: GifMetadata
    palette: Palette
    selection: FrameSelection
    processed_frames: int = 0
    failed_frames: list = field(default_factory=list)
    first_frame: bytes = None
    elapsed: float = 0.0

    @property
    def selected_count(self):
        return self.selection.selected_count

    @property
    def complete(self):
        return self.processed_frames == self.selection.selected_count


def make_kmeans(n_clusters, **kwargs):
    """Return a KMeans instance with a fixed seed so palettes are reproducible."""
    return KMeans(n_clusters=n_clusters, random_state=kwargs.get('random_state', 42), n_init=kwargs.get('n_init', 10))


def get_palette(choice):
    """Look up a built-in palette by 1-based number or case-insensitive name."""
    if isinstance(choice, str):
        key = choice.strip()
        if key.isdigit():
            choice = int(key)
        else:
            for palette in PALETTES:
                if palette.name.lower() == key.lower():
                    return palette
            raise InvalidPaletteError(f"Unknown palette {choice!r}")
    if isinstance(choice, int):
        if not 1 <= choice <= len(PALETTES):
            raise InvalidPaletteError(f"Palette number must be between 1 and {len(PALETTES)}, got {choice}")
        palette = PALETTES[choice - 1]
    else:
        raise InvalidPaletteError(f"Unknown palette {choice!r}")
    if palette.colors is not None and len(palette.colors) == 0:
        raise InvalidPaletteError(f"Palette {palette.name!r} has no colors")
    return palette


def closest_color(color, palette):
    """Return the palette entry nearest to color by Euclidean distance.

    The first entry wins ties.
    """
    if palette is None or len(palette) == 0:
        raise InvalidPaletteError("Palette must contain at least one color")
    closest = palette[0]
    min_distance = float('inf')
    for p in palette:
        distance = ((color[0] - p[0]) ** 2 + (color[1] - p[1]) ** 2 + (color[2] - p[2]) ** 2) ** 0.5
        if distance < min_distance:
            min_distance = distance
            closest = p
    return tuple(int(c) for c in closest)


def apply_palette(pixels, colors):
    """Map every pixel of an (..., 3) uint8 array to its closest palette color.

    Vectorised version of closest_color(). Squared distances are compared in
    integers and argmin returns the first minimum, so ties resolve the same way.
    """
    pal = np.asarray(colors, dtype=np.int32).reshape(-1, 3)
    if len(pal) == 0:
        raise InvalidPaletteError("Palette must contain at least one color")
    flat = np.asarray(pixels, dtype=np.int32).reshape(-1, 3)
    out = np.empty(flat.shape, dtype=np.uint8)
    for start in range(0, len(flat), PALETTE_CHUNK_PIXELS):
        chunk = flat[start:start + PALETTE_CHUNK_PIXELS]
        dist = ((chunk[:, None, :] - pal[None, :, :]) ** 2).sum(axis=2)
        out[start:start + PALETTE_CHUNK_PIXELS] = pal[dist.argmin(axis=1)]
    return out.reshape(np.shape(pixels))


def create_adaptive_palette(frame_source, indices, n_colors=16, log=print):
    """Derive an n_colors palette from the selected frames using KMeans.

    Samples every 4th pixel. When the frames hold no more than n_colors
    distinct colors those colors are used directly.
    """
    if not 1 <= n_colors <= 256:
        raise InvalidPaletteError(f"Adaptive palette size must be between 1 and 256, got {n_colors}")
    log(f"Creating {n_colors}-color adaptive palette...")

    all_pixels = []
    sample_rate = 4
    for index in indices:
        try:
            pixels = np.asarray(frame_source.get_frame(index))
        except FrameError as exc:
            log(f"Warning: skipping {exc} for palette sampling")
            continue
        all_pixels.append(pixels[..., :3].reshape(-1, 3)[::sample_rate])

    if not all_pixels:
        raise InvalidPaletteError("No frames could be sampled for the adaptive palette")

    unique_pixels = np.unique(np.vstack(all_pixels), axis=0)
    log(f"  Found {len(unique_pixels)} unique colors")

    if len(unique_pixels) <= n_colors:
        centers = unique_pixels.astype(np.uint8)
    else:
        kmeans = make_kmeans(n_clusters=n_colors, random_state=42, n_init=10)
        kmeans.fit(unique_pixels.astype(np.float32))
        centers = np.clip(np.rint(kmeans.cluster_centers_), 0, 255).astype(np.uint8)

    colors = tuple(tuple(int(c) for c in center) for center in centers)
    return Palette(f"Adaptive ({len(colors)})", colors)


def select_frames(total_frames, retention_percent, total_duration):
    """Compute the uniform frame subsampling for a retention percentage.

    Rounding is half-up, done in integer arithmetic.
    """
    if total_frames <= 0:
        raise EmptyInputError("No frames found in the input")
    retention_percent = max(1, min(100, int(retention_percent)))
    # round(100 / p) == floor((200 + p) / (2p))
    skip_stride = max(1, (200 + retention_percent) // (2 * retention_percent))
    selected_count = -(-total_frames // skip_stride)
    output_frame_duration = (2 * total_duration + selected_count) // (2 * selected_count)
    return FrameSelection(total_frames, skip_stride, selected_count, output_frame_duration)


def pack_header(width, height, frame_duration):
    for name, value in (('width', width), ('height', height), ('frame duration', frame_duration)):
        if not 0 <= value <= MAX_HEADER_VALUE:
            raise ValueError(f"{name} {value} does not fit in the 16-bit header field")
    return struct.pack(HEADER_FORMAT, width, height, frame_duration)


class PixelBinWriter:
    """Append-only writer for pixels.bin.

    write_header() must be called once before any append_frame(). Frames are
    written as they arrive; the handle is closed on every exit path when the
    writer is used as a context manager.
    """

    def __init__(self, path):
        self.path = path
        self._f = None
        self.frame_size = None
        self.frames_written = 0

    def open(self):
        self._f = open(self.path, 'wb')
        return self

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def write_header(self, width, height, frame_duration):
        if self._f is None:
            raise RuntimeError("Writer is not open")
        if self.frame_size is not None:
            raise RuntimeError("Header already written")
        self._f.write(pack_header(width, height, frame_duration))
        self.frame_size = width * height * 3

    def append_frame(self, frame, index=None):
        """Write one frame of width*height*3 bytes.

        On a write error the file is cut back to the end of the previous frame
        and FrameIOError is raised.
        """
        if self.frame_size is None:
            raise RuntimeError("write_header() must be called before append_frame()")
        data = frame.tobytes() if isinstance(frame, np.ndarray) else bytes(frame)
        if len(data) != self.frame_size:
            raise ValueError(f"Frame has {len(data)} bytes, expected {self.frame_size}")
        pos = HEADER_SIZE + self.frames_written * self.frame_size
        try:
            self._f.write(data)
        except OSError as exc:
            self._f.seek(pos)
            self._f.truncate()
            raise FrameIOError(self.frames_written if index is None else index, str(exc)) from exc
        self.frames_written += 1

    def close(self):
        if self._f is None:
            return
        try:
            self._f.flush()
            os.fsync(self._f.fileno())
        finally:
            self._f.close()
            self._f = None


class GifFrameSource:
    """Decode GIF frames in memory with Pillow.

    get_frame() returns an (height, width, 4) RGBA uint8 array with GIF
    disposal already applied.
    """

    def __init__(self, path):
        self.path = path
        self._img = Image.open(path)

    def __len__(self):
        return getattr(self._img, 'n_frames', 1)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        self._img.close()

    def analyze(self):
        total_frames = len(self)
        if total_frames == 0:
            raise EmptyInputError(f"No frames found in {self.path}")
        durations = []
        for index in range(total_frames):
            self._img.seek(index)
            durations.append(int(self._img.info.get('duration') or 0) or DEFAULT_FRAME_DURATION)
        self._img.seek(0)
        width, height = self._img.size
        return GifMetadata(
            total_frames=total_frames,
            frame_duration=durations[0],
            width=width,
            height=height,
            total_duration=sum(durations),
        )

    def get_frame(self, index):
        try:
            self._img.seek(index)
            return np.array(self._img.convert('RGBA'), dtype=np.uint8)
        except (EOFError, OSError, ValueError, SyntaxError) as exc:
            raise FrameDecodeError(index, f"decode failed: {exc}") from exc


def analyze_gif(frame_source, log=print):
    log("Analyzing GIF...")
    metadata = frame_source.analyze()
    log(f"  Resolution: {metadata.width}x{metadata.height}")
    log(f"  Total frames: {metadata.total_frames}")
    log(f"  Frame duration: {metadata.frame_duration}ms")
    log(f"  Total duration: {metadata.total_duration}ms")
    return metadata


def frame_to_rgb(pixels, width, height, index):
    """Drop the alpha channel and check the frame matches the header size."""
    arr = np.asarray(pixels)
    if arr.ndim != 3 or arr.shape[0] != height or arr.shape[1] != width or arr.shape[2] < 3:
        raise FrameDecodeError(index, f"unexpected pixel array shape {arr.shape}, expected ({height}, {width}, 3|4)")
    return np.ascontiguousarray(arr[..., :3], dtype=np.uint8)


def convert_gif(frame_source, metadata, palette, retention_percent, output_bin, log=print, progress_callback=None):
    """Write the selected frames of frame_source to output_bin.

    Args:
        frame_source: object with get_frame(index) returning (H, W, 3|4) pixels
        metadata: GifMetadata of the source
        palette: Palette to quantize to, or None / Palette with colors=None to keep colors
        retention_percent: share of frames to keep, clamped to [1, 100]
        output_bin: path of the binary file to write
        log: callable used for console messages
        progress_callback: Optional callback(current, total, message)

    Frames that fail to decode or write are logged and skipped. Setup errors
    (no frames, bad palette, header out of range) are raised before the output
    file is created.
    """
    start_time = time.time()
    selection = select_frames(metadata.total_frames, retention_percent, metadata.total_duration)
    pack_header(metadata.width, metadata.height, selection.output_frame_duration)

    colors = None
    if palette is not None and palette.colors is not None:
        if len(palette.colors) == 0:
            raise InvalidPaletteError(f"Palette {palette.name!r} has no colors")
        colors = np.asarray(palette.colors, dtype=np.int32)

    log(f"Frames selected: {selection.selected_count} (every {selection.skip_stride})")
    log(f"Output frame duration: {selection.output_frame_duration}ms")

    result = ConversionResult(
        output_bin=output_bin,
        metadata=metadata,
        palette=palette,
        selection=selection,
    )

    with PixelBinWriter(output_bin) as writer:
        writer.write_header(metadata.width, metadata.height, selection.output_frame_duration)

        for n, index in enumerate(selection.indices):
            log(f"Processing frame {index + 1}/{metadata.total_frames}...")
            try:
                frame = frame_to_rgb(frame_source.get_frame(index), metadata.width, metadata.height, index)
                if colors is not None:
                    frame = apply_palette(frame, colors)
                frame_bytes = frame.tobytes()
                writer.append_frame(frame_bytes, index=index)
            except FrameError as exc:
                log(f"Error processing {exc}")
                result.failed_frames.append(index)
                continue

            result.processed_frames += 1
            if result.first_frame is None:
                result.first_frame = frame_bytes
            if progress_callback:
                progress_callback(n + 1, selection.selected_count, f"Wrote frame {index + 1}")

    result.elapsed = time.time() - start_time
    log(f"Binary file written: {output_bin}")
    log(f"  Frames written: {result.processed_frames}/{selection.selected_count}")
    log(f"  Completed in {result.elapsed:.2f}s")
    return result


def prompt_options(input_fn=input, log=print):
    """Ask the operator for a palette and a retention percentage.

    Returns (palette choice, retention percent). The choice is a built-in
    Palette or the string 'adaptive'.
    """
    log("\nSelect a color palette:")
    for i, palette in enumerate(PALETTES):
        log(f"{i + 1}. {palette.name}")
    log(f"{len(PALETTES) + 1}. Adaptive")

    answer = input_fn("\nEnter the palette number: ").strip()
    if answer.lower() == 'adaptive' or answer == str(len(PALETTES) + 1):
        choice = 'adaptive'
    else:
        choice = get_palette(answer)

    answer = input_fn("Enter the percentage of frames to keep (1-100): ").strip()
    try:
        percent = int(answer)
    except ValueError:
        raise ValueError(f"Percentage must be a whole number, got {answer!r}") from None
    return choice, max(1, min(100, percent))


def main(argv=None):
    parser = argparse.ArgumentParser(description="GIF to raw RGB pixel-sequence converter")
    parser.add_argument('--input', type=str, default='ejemplo.gif', help='Input GIF file')
    parser.add_argument('--output-bin', type=str, default='pixels.bin', help='Output binary file')
    parser.add_argument(
        '--palette',
        type=str,
        default='original',
        help='Palette number (1-6), name ("game boy", "snes", ...) or "adaptive". '
             'Original keeps the GIF colors unchanged.'
    )
    parser.add_argument(
        '--adaptive-colors',
        type=int,
        default=16,
        metavar='N',
        help='Number of colors for --palette adaptive (KMeans over the selected frames)'
    )
    parser.add_argument('--percent', type=int, default=100, help='Percentage of frames to keep (1-100)')
    parser.add_argument('--interactive', action='store_true', help='Prompt for palette and percentage')
    parser.add_argument('--no-verify', action='store_true', help='Skip reading back the written file')
    args = parser.parse_args(argv)

    print("GIF Pixel Converter")
    print("===================")
    print(f"Input: {args.input}")

    try:
        with GifFrameSource(args.input) as source:
            metadata = analyze_gif(source)

            if args.interactive:
                choice, percent = prompt_options()
            else:
                percent = args.percent
                if args.palette.strip().lower() == 'adaptive':
                    choice = 'adaptive'
                else:
                    choice = get_palette(args.palette)

            if choice == 'adaptive':
                selection = select_frames(metadata.total_frames, percent, metadata.total_duration)
                palette = create_adaptive_palette(source, selection.indices, args.adaptive_colors)
            else:
                palette = choice
            print(f"Palette: {palette.name}")

            result = convert_gif(source, metadata, palette, percent, args.output_bin)
    except (PixelConversionError, ValueError, OSError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not result.complete:
        print(f"Warning: {len(result.failed_frames)} of {result.selected_count} frames were skipped")

    if args.no_verify:
        return

    print("Verifying output...")
    report = verify_pixels_bin(args.output_bin, metadata, result.first_frame, expected_frames=result.processed_frames)
    for line in report.describe():
        print(f"  {line}")
    if report.ok:
        print("Verification passed.")
    else:
        for error in report.errors:
            print(f"Warning: {error}")


if __name__ == "__main__":
    main()
