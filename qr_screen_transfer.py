#!/usr/bin/env python3
"""
QR Screen Transfer - Move a file across an air gap using a screen and a screen capture

The sender turns a file into a series of QR code images and cycles them in a
browser slideshow. The receiver captures the screen on a fixed interval,
decodes whatever QR code is visible, drops duplicates and rebuilds the file
once no new code has appeared for a few seconds.

REQUIREMENTS:
  Python 3.8+

  Install Python dependencies with:
    pip install -e .

  System dependencies (for pyzbar):
    - Linux: sudo apt-get install libzbar0
    - macOS: brew install zbar
    - Windows: Download from http://zbar.sourceforge.net/

USAGE:
  Render a file as QR codes (sender):
    python qr_screen_transfer.py send myfile.bin

  Serve the rendered codes and slideshow on port 9090 (sender):
    python qr_screen_transfer.py send

  Capture the screen and rebuild the file (receiver):
    python qr_screen_transfer.py receive

For detailed help on each command:
    python qr_screen_transfer.py send --help
    python qr_screen_transfer.py receive --help
"""

import sys
import os
import json
import time
import hashlib
import base64
import binascii
import mimetypes
import posixpath
import shutil
import tempfile
import urllib.parse
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import List, Dict, Any, Optional, Callable, Iterable, Set

import click
import qrcode
from qrcode.constants import ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q, ERROR_CORRECT_H
from qrcode.image.svg import SvgPathImage
from PIL import Image, ImageGrab
from pyzbar import pyzbar
from pyzbar.pyzbar import ZBarSymbol
import cv2
import numpy as np

# Version and protocol constants
VERSION = "1.0.0"

CHUNK_SIZE = 2000             # base64 characters carried by one QR code
SLIDE_INTERVAL_MS = 1000      # slideshow period
CAPTURE_INTERVAL_MS = 50      # receiver poll period
IDLE_TIMEOUT_SECONDS = 3      # silence after which the transfer is considered done
HTTP_PORT = 9090
QR_OUTPUT_DIR = "qr_output"
HTML_OUTPUT_DIR = "web"
RECEIVED_FILE_PREFIX = "received_file_"
STATUS_EVERY_TICKS = 25

# Indexed payload framing: MAGIC|md5|index|total|chunk
INDEXED_MAGIC = "QRX1"
INDEXED_SEPARATOR = "|"

MODES = ('legacy', 'indexed')

# QR Code error correction mapping
ERROR_CORRECTION_LEVELS = {
    'L': ERROR_CORRECT_L,  # ~7% error correction
    'M': ERROR_CORRECT_M,  # ~15% error correction (default)
    'Q': ERROR_CORRECT_Q,  # ~25% error correction
    'H': ERROR_CORRECT_H,  # ~30% error correction
}

# Byte-mode capacity of the largest QR code (version 40)
QR_MAX_BYTES = {
    'L': 2953,
    'M': 2331,
    'Q': 1663,
    'H': 1273,
}


# ============================================================================
# ERRORS
# ============================================================================

class TransferError(Exception):
    """Base class for all transfer failures."""


class EmptyInputError(TransferError):
    """The source file holds no data, so there is nothing to transfer."""


class ReadError(TransferError):
    """The source file could not be opened or read."""


class CaptureError(TransferError):
    """A frame could not be captured from the screen."""


class SymbolDecodeError(TransferError):
    """A QR symbol was located but its payload could not be recovered."""


class NoDataError(TransferError):
    """Completion was declared before any chunk was collected."""


class EmptySequenceError(TransferError):
    """Reassembly was requested with zero chunks."""


class Base64DecodeError(TransferError):
    """The concatenated chunks are not valid base64."""


class ChunkHeaderError(TransferError):
    """An indexed payload has a missing or malformed header."""


class MissingChunksError(TransferError):
    """Indexed reassembly found gaps in the chunk sequence."""


class ChecksumMismatchError(TransferError):
    """The recovered bytes do not match the digest carried by the chunks."""


class PayloadTooLargeError(TransferError):
    """A chunk payload does not fit a single QR code at the chosen level."""


# ============================================================================
# ENCODING FUNCTIONS
# ============================================================================

def calculate_checksum(data: bytes, algorithm: str = 'sha256') -> str:
    """Calculate hash checksum of data.

    Args:
        data: Bytes to hash
        algorithm: Hash algorithm (sha256, md5)

    Returns:
        Hex string of hash
    """
    if algorithm == 'sha256':
        return hashlib.sha256(data).hexdigest()
    elif algorithm == 'md5':
        return hashlib.md5(data).hexdigest()
    else:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")


def fingerprint(payload: str) -> str:
    """Dedup key for a decoded payload."""
    return calculate_checksum(payload.encode('utf-8'), 'sha256')


def read_source_file(path: str) -> bytes:
    """Read the file to be transferred.

    Raises:
        ReadError: If the file cannot be opened or read
        EmptyInputError: If the file is empty
    """
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise ReadError(f"Cannot read file '{path}': {e}") from e

    if not data:
        raise EmptyInputError(f"File '{path}' is empty, nothing to transfer")

    return data


def split_text(text: str, chunk_size: int) -> List[str]:
    """Slice text into consecutive pieces of chunk_size characters.

    The final piece may be shorter. Piece boundaries carry no meaning.
    """
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")
    return [text[i:i + chunk_size] for i in range(0, len(text), chunk_size)]


def encode(file_bytes: bytes, chunk_size: int = CHUNK_SIZE) -> List[str]:
    """Turn file bytes into ordered base64 chunks.

    Concatenating the chunks in order and base64 decoding the result gives
    back exactly file_bytes. Chunks carry no index; list order is the only
    record of ordering.

    Args:
        file_bytes: Data to transfer (must be non-empty)
        chunk_size: Characters per chunk

    Returns:
        List of chunk strings in production order

    Raises:
        EmptyInputError: If file_bytes is empty
    """
    if not file_bytes:
        raise EmptyInputError("Input is empty, nothing to transfer")

    b64_text = base64.b64encode(file_bytes).decode('ascii')
    return split_text(b64_text, chunk_size)


def encode_indexed(file_bytes: bytes, chunk_size: int = CHUNK_SIZE) -> List[str]:
    """Encode file bytes into chunks framed with index, total and file digest.

    Payload format: ``QRX1|<md5 hex>|<index>|<total>|<chunk>`` with a 1-based
    index. The chunk part is the same slice ``encode`` would produce.
    """
    chunks = encode(file_bytes, chunk_size)
    file_md5 = calculate_checksum(file_bytes, 'md5')
    total = len(chunks)

    return [
        INDEXED_SEPARATOR.join([INDEXED_MAGIC, file_md5, str(index), str(total), chunk])
        for index, chunk in enumerate(chunks, 1)
    ]


def indexed_header_length(total: int) -> int:
    """Characters added in front of each chunk by encode_indexed for a given total."""
    # MAGIC|md5|index|total| with index no wider than total
    return len(INDEXED_MAGIC) + 32 + 4 * len(INDEXED_SEPARATOR) + 2 * len(str(total))


def check_payload_capacity(payloads: List[str], error_correction: str,
                           header_length: int = 0) -> None:
    """Make sure every payload fits one QR code at the given error correction.

    Args:
        payloads: Payloads about to be rendered
        error_correction: Error correction level ('L', 'M', 'Q', 'H')
        header_length: Framing characters in front of each chunk

    Raises:
        PayloadTooLargeError: If the longest payload exceeds the version 40 capacity
    """
    capacity = QR_MAX_BYTES[error_correction]
    longest = max(len(p.encode('utf-8')) for p in payloads)
    if longest > capacity:
        raise PayloadTooLargeError(
            f"Payload of {longest} bytes does not fit a QR code at error correction "
            f"{error_correction} (capacity {capacity} bytes). "
            f"Use --chunk-size {capacity - header_length} or less, or a lower error correction level."
        )


def parse_indexed_payload(payload: str) -> Dict[str, Any]:
    """Parse an indexed payload header.

    Returns:
        Dictionary with md5, index, total and data

    Raises:
        ChunkHeaderError: If the payload is not a well-formed indexed chunk
    """
    parts = payload.split(INDEXED_SEPARATOR, 4)
    if len(parts) != 5 or parts[0] != INDEXED_MAGIC:
        raise ChunkHeaderError("Payload is not an indexed chunk")

    _, md5_hex, index_text, total_text, data = parts

    if len(md5_hex) != 32 or any(c not in '0123456789abcdef' for c in md5_hex):
        raise ChunkHeaderError(f"Invalid file digest in chunk header: {md5_hex!r}")

    try:
        index = int(index_text)
        total = int(total_text)
    except ValueError:
        raise ChunkHeaderError(f"Invalid index/total in chunk header: {index_text!r}/{total_text!r}")

    if total < 1 or not 1 <= index <= total:
        raise ChunkHeaderError(f"Chunk index {index} out of range for total {total}")

    return {
        'md5': md5_hex,
        'index': index,
        'total': total,
        'data': data,
    }


# ============================================================================
# RENDERING (sender)
# ============================================================================

class SymbolEncoder:
    """Renders a text payload as a scannable QR image.

    ``render`` returns an image object with a ``save(path)`` method.
    """

    extension = ''

    def __init__(self, error_correction: str = 'M', box_size: int = 10, border: int = 4):
        if error_correction not in ERROR_CORRECTION_LEVELS:
            raise ValueError(f"Unsupported error correction level: {error_correction}")
        self.error_correction = error_correction
        self.box_size = box_size
        self.border = border

    def _make_qr(self, text: str) -> qrcode.QRCode:
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECTION_LEVELS[self.error_correction],
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(text)
        qr.make(fit=True)
        return qr

    def render(self, text: str):
        raise NotImplementedError


class SvgSymbolEncoder(SymbolEncoder):
    """Vector output, scales crisply in the browser."""

    extension = 'svg'

    def render(self, text: str):
        return self._make_qr(text).make_image(image_factory=SvgPathImage)


class PngSymbolEncoder(SymbolEncoder):
    extension = 'png'

    def render(self, text: str) -> Image.Image:
        img = self._make_qr(text).make_image(fill_color="black", back_color="white")
        return img.convert('RGB')


SYMBOL_ENCODERS = {
    'svg': SvgSymbolEncoder,
    'png': PngSymbolEncoder,
}


def image_file_name(index: int, extension: str) -> str:
    """Display file name for the 1-based chunk index."""
    return f"qr_{index:03d}.{extension}"


def clear_rendered_images(output_dir: str) -> int:
    """Remove images left over from a previous encode run.

    Returns:
        Number of files removed
    """
    if not os.path.isdir(output_dir):
        return 0

    removed = 0
    for name in os.listdir(output_dir):
        base, ext = os.path.splitext(name)
        if base.startswith('qr_') and ext.lstrip('.') in SYMBOL_ENCODERS:
            os.remove(os.path.join(output_dir, name))
            removed += 1
    return removed


def render_chunks(payloads: List[str], symbol_encoder: SymbolEncoder,
                  output_dir: str = QR_OUTPUT_DIR) -> List[str]:
    """Render each payload to an image file in output_dir.

    Args:
        payloads: Chunk payloads in production order
        symbol_encoder: Renderer used for every payload
        output_dir: Directory receiving ``qr_001.<ext>``, ``qr_002.<ext>``...

    Images are rendered into a staging directory first; the previous run's
    images are replaced only once every payload has rendered.

    Returns:
        List of written file names in display order
    """
    os.makedirs(output_dir, exist_ok=True)
    staging_dir = tempfile.mkdtemp(prefix='.staging-', dir=output_dir)

    try:
        names = []
        with click.progressbar(payloads, label='Creating QR codes') as bar:
            for index, payload in enumerate(bar, 1):
                name = image_file_name(index, symbol_encoder.extension)
                symbol_encoder.render(payload).save(os.path.join(staging_dir, name))
                names.append(name)

        clear_rendered_images(output_dir)
        for name in names:
            os.replace(os.path.join(staging_dir, name), os.path.join(output_dir, name))
    finally:
        shutil.rmtree(staging_dir, ignore_errors=True)

    return names


def list_rendered_images(output_dir: str) -> List[str]:
    """Sorted names of the rendered QR images in output_dir."""
    if not os.path.isdir(output_dir):
        return []
    return sorted(
        name for name in os.listdir(output_dir)
        if name.startswith('qr_') and os.path.splitext(name)[1].lstrip('.') in SYMBOL_ENCODERS
    )


_SLIDESHOW_TEMPLATE = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>QR Screen Transfer ({total} codes)</title>
<style>
  body {{ margin: 0; background: #fff; font-family: sans-serif; text-align: center; }}
  #frame {{ max-width: 95vmin; max-height: 85vmin; image-rendering: pixelated; margin-top: 2vh; }}
  #status {{ font-size: 14px; color: #333; margin: 8px; }}
  details {{ text-align: left; margin: 16px; }}
</style>
</head>
<body>
<div id="status"></div>
<img id="frame" alt="QR code">
<details>
<summary>All codes</summary>
<ol>
{listing}
</ol>
</details>
<script>
const images = {images_json};
const prefix = {prefix_json};
const intervalMs = {interval_ms};
let current = 0;
const frame = document.getElementById('frame');
const status = document.getElementById('status');
function show(i) {{
  frame.src = prefix + images[i];
  status.textContent = 'Code ' + (i + 1) + ' / ' + images.length;
}}
if (images.length > 0) {{
  show(0);
  setInterval(function () {{
    current = (current + 1) % images.length;
    show(current);
  }}, intervalMs);
}} else {{
  status.textContent = 'No QR codes generated yet';
}}
</script>
</body>
</html>
"""


def render_slideshow_page(image_names: List[str], interval_ms: int = SLIDE_INTERVAL_MS,
                          image_prefix: str = f"../{QR_OUTPUT_DIR}/") -> str:
    """Build the slideshow HTML that cycles the given images in order.

    The default prefix resolves both when the page is opened from disk
    (``web/index.html``) and when it is served from ``/``.
    """
    listing = "\n".join(
        f'<li><a href="{image_prefix}{name}">{name}</a></li>' for name in image_names
    )
    return _SLIDESHOW_TEMPLATE.format(
        total=len(image_names),
        listing=listing,
        images_json=json.dumps(image_names),
        prefix_json=json.dumps(image_prefix),
        interval_ms=int(interval_ms),
    )


def write_slideshow_page(web_dir: str, image_names: List[str],
                         interval_ms: int = SLIDE_INTERVAL_MS,
                         image_prefix: str = f"../{QR_OUTPUT_DIR}/") -> str:
    """Write ``index.html`` into web_dir and return its path."""
    os.makedirs(web_dir, exist_ok=True)
    index_path = os.path.join(web_dir, 'index.html')
    with open(index_path, 'w', encoding='utf-8') as f:
        f.write(render_slideshow_page(image_names, interval_ms, image_prefix))
    return index_path


def image_prefix_for(qr_dir: str, web_dir: str) -> str:
    """Relative URL of qr_dir as seen from ``web_dir/index.html``."""
    return os.path.relpath(qr_dir, web_dir).replace(os.sep, '/') + '/'


def image_route_for(qr_dir: str, web_dir: str) -> str:
    """Absolute route where a page served as ``/index.html`` resolves its images.

    Leading ``..`` segments collapse at the root, the way browsers resolve them.
    """
    route = posixpath.normpath(posixpath.join('/', image_prefix_for(qr_dir, web_dir)))
    return route.rstrip('/') + '/'


# ============================================================================
# CAPTURE AND DECODE (receiver)
# ============================================================================

class FrameSource:
    """Produces raw RGB(A) pixel buffers."""

    def capture_frame(self) -> np.ndarray:
        raise NotImplementedError


class ScreenFrameSource(FrameSource):
    """Grabs the primary screen through Pillow."""

    def __init__(self, all_screens: bool = False):
        self.all_screens = all_screens

    def capture_frame(self) -> np.ndarray:
        try:
            screenshot = ImageGrab.grab(all_screens=self.all_screens)
        except Exception as e:
            raise CaptureError(f"Screen capture failed: {e}") from e
        if screenshot is None:
            raise CaptureError("Screen capture returned no image")
        return np.asarray(screenshot.convert('RGB'))


class SymbolDecoder:
    """Turns a greyscale image into the text of the first visible QR code.

    ``decode`` returns None when no code is visible and raises
    SymbolDecodeError when a code was found but could not be read.
    """

    def decode(self, image: np.ndarray) -> Optional[str]:
        raise NotImplementedError


class PyzbarDecoder(SymbolDecoder):
    """Decodes with pyzbar; OpenCV's locator tells "no code" from "unreadable code"."""

    def __init__(self):
        self.detector = cv2.QRCodeDetector()

    def decode(self, image: np.ndarray) -> Optional[str]:
        decoded_objects = pyzbar.decode(image, symbols=[ZBarSymbol.QRCODE])
        if not decoded_objects:
            found, points = self.detector.detect(image)
            if found and points is not None:
                raise SymbolDecodeError("QR code located but its payload could not be decoded")
            return None

        # Single code per frame: only the first symbol is consulted
        raw = decoded_objects[0].data
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise SymbolDecodeError(f"QR payload is not valid text ({len(raw)} bytes): {e}") from e


def to_greyscale(frame: np.ndarray) -> np.ndarray:
    """Convert an RGB or RGBA frame to luminance (0.299 R + 0.587 G + 0.114 B)."""
    frame = np.asarray(frame)
    if frame.ndim == 2:
        return frame
    if frame.ndim != 3 or frame.shape[2] not in (3, 4):
        raise ValueError(f"Unsupported frame shape: {frame.shape}")
    if frame.dtype != np.uint8:
        frame = frame.astype(np.uint8)
    code = cv2.COLOR_RGBA2GRAY if frame.shape[2] == 4 else cv2.COLOR_RGB2GRAY
    return cv2.cvtColor(frame, code)


class TickOutcome:
    """Result of one capture tick."""


class NoSymbolFound(TickOutcome):
    def __repr__(self):
        return "NoSymbolFound()"


class DecodeFailure(TickOutcome):
    def __init__(self, reason: str):
        self.reason = reason

    def __repr__(self):
        return f"DecodeFailure({self.reason!r})"


class Decoded(TickOutcome):
    def __init__(self, payload: str):
        self.payload = payload

    def __repr__(self):
        return f"Decoded({len(self.payload)} chars)"


def capture_tick(frame_source: FrameSource, decoder: SymbolDecoder) -> TickOutcome:
    """Capture one frame and decode the first QR code on it.

    Capture and conversion errors propagate; an unreadable symbol is
    reported as DecodeFailure.
    """
    frame = frame_source.capture_frame()
    grey = to_greyscale(frame)

    try:
        payload = decoder.decode(grey)
    except SymbolDecodeError as e:
        return DecodeFailure(str(e))

    if payload is None:
        return NoSymbolFound()
    return Decoded(payload)


# ============================================================================
# DEDUP AND COMPLETION (receiver)
# ============================================================================

class SessionState(Enum):
    COLLECTING = 'collecting'
    FINALIZING = 'finalizing'


class ReceiverSession:
    """Collects distinct chunk payloads and decides when the transfer is over.

    The session owns the seen fingerprints, the received sequence (in
    observation order) and the time of the last new chunk. Completion is
    inferred from silence: once at least one chunk is held and nothing new
    has arrived for longer than idle_timeout, ``tick`` moves the session to
    FINALIZING. In indexed mode the session also finalizes as soon as every
    chunk index has been seen.

    Args:
        idle_timeout: Seconds of silence that end the transfer
        mode: 'legacy' (implicit order) or 'indexed'
        clock: Monotonic time source, injectable for tests
        on_progress: Called as on_progress(count, payload) for each new chunk
    """

    def __init__(self, idle_timeout: float = IDLE_TIMEOUT_SECONDS, mode: str = 'legacy',
                 clock: Callable[[], float] = time.monotonic,
                 on_progress: Optional[Callable[[int, str], None]] = None):
        if mode not in MODES:
            raise ValueError(f"Unsupported mode: {mode}")
        self.idle_timeout = idle_timeout
        self.mode = mode
        self.clock = clock
        self.on_progress = on_progress

        self.state = SessionState.COLLECTING
        self.seen: Set[str] = set()
        self.received: List[str] = []
        self.last_new_at: Optional[float] = None

        # indexed mode bookkeeping
        self.rejected: Set[str] = set()
        self.file_md5: Optional[str] = None
        self.expected_total: Optional[int] = None
        self.indices: Set[int] = set()

    def observe(self, payload: str) -> bool:
        """Feed one decoded payload.

        Returns:
            True if the payload was new and accepted, False otherwise
        """
        key = fingerprint(payload)
        if key in self.seen or key in self.rejected:
            return False

        if self.mode == 'indexed' and not self._accept_indexed(key, payload):
            return False

        self.seen.add(key)
        self.received.append(payload)
        self.last_new_at = self.clock()

        if self.on_progress is not None:
            self.on_progress(len(self.received), payload)
        return True

    def _accept_indexed(self, key: str, payload: str) -> bool:
        try:
            header = parse_indexed_payload(payload)
        except ChunkHeaderError as e:
            self.rejected.add(key)
            click.echo(f"Warning: ignoring QR code: {e}", err=True)
            return False

        if self.file_md5 is None:
            self.file_md5 = header['md5']
            self.expected_total = header['total']
        elif header['md5'] != self.file_md5 or header['total'] != self.expected_total:
            self.rejected.add(key)
            click.echo(
                f"Warning: ignoring QR code from a different transfer "
                f"(MD5 {header['md5']}, expected {self.file_md5})",
                err=True
            )
            return False

        if header['index'] in self.indices:
            self.rejected.add(key)
            click.echo(f"Warning: ignoring conflicting copy of chunk {header['index']}", err=True)
            return False

        self.indices.add(header['index'])
        return True

    @property
    def is_complete(self) -> bool:
        """True once every index of an indexed transfer is held."""
        return (self.mode == 'indexed' and self.expected_total is not None
                and len(self.indices) == self.expected_total)

    def idle_for(self) -> float:
        if self.last_new_at is None:
            return 0.0
        return self.clock() - self.last_new_at

    def tick(self) -> bool:
        """Check for completion.

        Returns:
            True exactly once, on the tick where the session moves to FINALIZING
        """
        if self.state is not SessionState.COLLECTING or not self.received:
            return False

        if self.is_complete or self.idle_for() > self.idle_timeout:
            self.state = SessionState.FINALIZING
            return True
        return False

    def finish(self) -> bytes:
        """Reassemble the collected chunks.

        Raises:
            NoDataError: If nothing was collected
        """
        if not self.received:
            raise NoDataError("No data received")
        self.state = SessionState.FINALIZING

        if self.mode == 'indexed':
            return reassemble_indexed(self.received)
        return reassemble(self.received)


def run_capture_loop(session: ReceiverSession, frame_source: FrameSource,
                     decoder: SymbolDecoder,
                     poll_interval: float = CAPTURE_INTERVAL_MS / 1000,
                     sleep: Callable[[float], None] = time.sleep,
                     verbose: bool = False,
                     max_ticks: Optional[int] = None) -> int:
    """Poll the frame source until the session finalizes.

    Per-tick failures are logged and never end the loop.

    Returns:
        Number of ticks performed
    """
    ticks = 0
    while True:
        ticks += 1
        if ticks % STATUS_EVERY_TICKS == 0:
            click.echo(f"[scanning] {ticks} captures, {len(session.received)} chunks collected")

        try:
            outcome = capture_tick(frame_source, decoder)
        except Exception as e:
            click.echo(f"[error] {e}", err=True)
        else:
            if isinstance(outcome, Decoded):
                if verbose:
                    click.echo(f"[debug] decoded {len(outcome.payload)} chars")
                session.observe(outcome.payload)
            elif isinstance(outcome, DecodeFailure):
                click.echo(f"[decode failed] {outcome.reason}", err=True)

        if session.tick():
            break
        if max_ticks is not None and ticks >= max_ticks:
            break

        sleep(poll_interval)

    return ticks


# ============================================================================
# REASSEMBLY (receiver)
# ============================================================================

def decode_base64_text(text: str) -> bytes:
    """Strict standard-alphabet base64 decode.

    Raises:
        Base64DecodeError: If the text is not valid base64
    """
    try:
        return base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise Base64DecodeError(f"Base64 decoding failed: {e}") from e


def reassemble(sequence: Iterable[str]) -> bytes:
    """Concatenate chunks in their stored order and base64 decode.

    No checksum is available, so a reordering that still forms valid
    base64 is accepted as is.

    Raises:
        EmptySequenceError: If the sequence is empty
        Base64DecodeError: If the concatenation is not valid base64
    """
    chunks = list(sequence)
    if not chunks:
        raise EmptySequenceError("Cannot reassemble: no chunks collected")

    return decode_base64_text("".join(chunks))


def reassemble_indexed(sequence: Iterable[str]) -> bytes:
    """Sort indexed chunks by index, check completeness, decode and verify MD5.

    Raises:
        EmptySequenceError: If the sequence is empty
        ChunkHeaderError: If any payload is malformed or from another transfer
        MissingChunksError: If any index between 1 and total is absent
        Base64DecodeError: If the ordered concatenation is not valid base64
        ChecksumMismatchError: If the decoded bytes do not match the MD5
    """
    payloads = list(sequence)
    if not payloads:
        raise EmptySequenceError("Cannot reassemble: no chunks collected")

    headers = [parse_indexed_payload(p) for p in payloads]
    reference = headers[0]

    by_index = {}
    for header in headers:
        if header['md5'] != reference['md5'] or header['total'] != reference['total']:
            raise ChunkHeaderError(
                f"Chunk {header['index']} belongs to a different transfer "
                f"(MD5 {header['md5']}, expected {reference['md5']})"
            )
        by_index.setdefault(header['index'], header['data'])

    total = reference['total']
    missing = [i for i in range(1, total + 1) if i not in by_index]
    if missing:
        raise MissingChunksError(
            f"Missing chunks {missing}: received {len(by_index)} of {total}"
        )

    file_data = decode_base64_text("".join(by_index[i] for i in range(1, total + 1)))

    actual_md5 = calculate_checksum(file_data, 'md5')
    if actual_md5 != reference['md5']:
        raise ChecksumMismatchError(
            f"MD5 verification failed! Expected: {reference['md5']}, Got: {actual_md5}"
        )

    return file_data


def write_recovered_file(file_data: bytes, directory: str = '.',
                         now: Callable[[], float] = time.time) -> str:
    """Write recovered bytes to ``received_file_<unix timestamp>`` in directory.

    An existing file is never overwritten; a numeric suffix is added instead.

    Returns:
        Path of the written file
    """
    base_name = f"{RECEIVED_FILE_PREFIX}{int(now())}"
    path = os.path.join(directory, base_name)
    suffix = 0
    while True:
        try:
            with open(path, 'xb') as f:
                f.write(file_data)
            return path
        except FileExistsError:
            suffix += 1
            path = os.path.join(directory, f"{base_name}_{suffix}")


def format_file_size(size: int) -> str:
    """Human readable size (bytes, KB or MB)."""
    kb = 1024
    mb = 1024 * 1024
    if size >= mb:
        return f"{size / mb:.2f} MB"
    elif size >= kb:
        return f"{size / kb:.2f} KB"
    return f"{size} bytes"


# ============================================================================
# HTTP SERVICE (sender)
# ============================================================================

def make_request_handler(qr_dir: str = QR_OUTPUT_DIR, web_dir: str = HTML_OUTPUT_DIR,
                         interval_ms: int = SLIDE_INTERVAL_MS) -> type:
    """Build a read-only handler serving the slideshow, images and /api/info."""
    image_route = image_route_for(qr_dir, web_dir)

    class Handler(BaseHTTPRequestHandler):
        server_version = f"qr-screen-transfer/{VERSION}"

        def _send_body(self, body: bytes, content_type: str) -> None:
            self.send_response(200)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.send_header("Cache-Control", "no-store")
            self.end_headers()
            self.wfile.write(body)

        def _send_index(self) -> None:
            index_path = os.path.join(web_dir, 'index.html')
            if os.path.isfile(index_path):
                with open(index_path, 'rb') as f:
                    body = f.read()
            else:
                # No page written yet; list whatever images exist
                body = render_slideshow_page(
                    list_rendered_images(qr_dir), interval_ms, image_route
                ).encode('utf-8')
            self._send_body(body, "text/html; charset=utf-8")

        def _send_image(self, name: str) -> None:
            # Only plain file names inside qr_dir are served
            if not name or name != os.path.basename(name) or name.startswith('.'):
                self.send_error(404, "Not Found")
                return
            path = os.path.join(qr_dir, name)
            if not os.path.isfile(path):
                self.send_error(404, "Not Found")
                return
            with open(path, 'rb') as f:
                body = f.read()
            content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
            self._send_body(body, content_type)

        def do_GET(self) -> None:  # noqa: N802
            path = urllib.parse.unquote(self.path.split("?", 1)[0])

            if path == '/api/info':
                body = json.dumps(count_rendered_files(qr_dir)).encode('utf-8')
                self._send_body(body, "application/json")
            elif path in ('/', '/index.html'):
                self._send_index()
            elif path.startswith(image_route):
                self._send_image(path[len(image_route):])
            else:
                self.send_error(404, "Not Found")

        def log_message(self, fmt: str, *args) -> None:
            click.echo(f"[http] {self.address_string()} {fmt % args}")

    return Handler


def count_rendered_files(qr_dir: str = QR_OUTPUT_DIR) -> Dict[str, int]:
    """Body of ``GET /api/info``: number of files in the image directory."""
    try:
        with os.scandir(qr_dir) as entries:
            total = sum(1 for entry in entries if entry.is_file())
    except OSError:
        total = 0
    return {'total': total}


def create_server(port: int = HTTP_PORT, host: str = '0.0.0.0',
                  qr_dir: str = QR_OUTPUT_DIR, web_dir: str = HTML_OUTPUT_DIR,
                  interval_ms: int = SLIDE_INTERVAL_MS) -> ThreadingHTTPServer:
    """Bind the HTTP service. Raises OSError if the port cannot be bound."""
    handler_cls = make_request_handler(qr_dir, web_dir, interval_ms)
    return ThreadingHTTPServer((host, port), handler_cls)


# ============================================================================
# CLI COMMANDS
# ============================================================================

def run_encode(input_file: str, chunk_size: int, error_correction: str, image_format: str,
               mode: str, interval: int, output_dir: str, web_dir: str) -> None:
    file_data = read_source_file(input_file)

    if mode == 'indexed':
        payloads = encode_indexed(file_data, chunk_size)
        header_length = indexed_header_length(len(payloads))
    else:
        payloads = encode(file_data, chunk_size)
        header_length = 0

    # Checked before output_dir is touched so a failed run keeps the old images
    check_payload_capacity(payloads, error_correction, header_length)

    click.echo(f"\nFile: {input_file} ({format_file_size(len(file_data))})")
    click.echo(f"Base64 length: {len(base64.b64encode(file_data))}")
    click.echo(f"Chunks: {len(payloads)} x {chunk_size} chars ({mode} mode)")
    click.echo(f"QR Configuration: Error Correction {error_correction}, Format {image_format.upper()}")

    symbol_encoder = SYMBOL_ENCODERS[image_format](error_correction)
    names = render_chunks(payloads, symbol_encoder, output_dir)

    image_prefix = image_prefix_for(output_dir, web_dir)
    index_path = write_slideshow_page(web_dir, names, interval, image_prefix)

    click.echo(f"\nQR codes: {output_dir}/ ({len(names)} files)")
    click.echo(f"Slideshow page: {index_path}")
    click.echo(f"Open {index_path} in a browser, or run 'send' without a file to serve it.")


def run_server(port: int, output_dir: str, web_dir: str, interval: int) -> None:
    server = create_server(port, qr_dir=output_dir, web_dir=web_dir, interval_ms=interval)

    click.echo(f"\n{'='*60}")
    click.echo("QR SCREEN TRANSFER - HTTP SERVICE")
    click.echo(f"{'='*60}")
    click.echo(f"Listening on: http://localhost:{port}")
    click.echo(f"QR codes available: {count_rendered_files(output_dir)['total']}")
    click.echo("Render a file first with: send <file>\n")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        click.echo("\nStopped.")
    finally:
        server.server_close()


def encode_options(func):
    func = click.option('--chunk-size', type=click.IntRange(min=1), default=CHUNK_SIZE,
                        help=f'Base64 characters per QR code [default: {CHUNK_SIZE}]')(func)
    func = click.option('--error-correction', type=click.Choice(['L', 'M', 'Q', 'H']), default='M',
                        help='Error correction level: L(7%), M(15%), Q(25%), H(30%) [default: M]')(func)
    func = click.option('--format', 'image_format', type=click.Choice(sorted(SYMBOL_ENCODERS)),
                        default='svg', help='Image format for rendered codes [default: svg]')(func)
    func = click.option('--mode', type=click.Choice(MODES), default='legacy',
                        help='legacy: plain chunks; indexed: chunks carry index, total and MD5')(func)
    return func


def location_options(func):
    func = click.option('--interval', type=click.IntRange(min=1), default=SLIDE_INTERVAL_MS,
                        help=f'Slideshow interval in ms [default: {SLIDE_INTERVAL_MS}]')(func)
    func = click.option('--output-dir', type=click.Path(file_okay=False), default=QR_OUTPUT_DIR,
                        help=f'Directory for QR images [default: {QR_OUTPUT_DIR}]')(func)
    func = click.option('--web-dir', type=click.Path(file_okay=False), default=HTML_OUTPUT_DIR,
                        help=f'Directory for the slideshow page [default: {HTML_OUTPUT_DIR}]')(func)
    return func


@click.group()
@click.version_option(version=VERSION)
def cli():
    """QR Screen Transfer - Send a file across an air gap as a QR code slideshow.

    The sender renders a file as QR codes and displays them in a browser;
    the receiver captures the screen and rebuilds the file.
    """
    pass


@cli.command()
@click.argument('input_file', required=False, type=click.Path())
@encode_options
@location_options
@click.option('--port', type=click.IntRange(1, 65535), default=HTTP_PORT,
              help=f'HTTP port for serve mode [default: {HTTP_PORT}]')
def send(input_file, chunk_size, error_correction, image_format, mode,
         interval, output_dir, web_dir, port):
    """Render INPUT_FILE as QR codes, or serve them when no file is given.

    Example:
        qr-screen-transfer send secret.tar.gz
        qr-screen-transfer send
    """
    try:
        if input_file:
            run_encode(input_file, chunk_size, error_correction, image_format,
                       mode, interval, output_dir, web_dir)
        else:
            run_server(port, output_dir, web_dir, interval)
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command('encode')
@click.argument('input_file', type=click.Path())
@encode_options
@location_options
def encode_command(input_file, chunk_size, error_correction, image_format, mode,
                   interval, output_dir, web_dir):
    """Render INPUT_FILE as numbered QR images plus a slideshow page.

    Example:
        qr-screen-transfer encode report.pdf --format png
    """
    try:
        run_encode(input_file, chunk_size, error_correction, image_format,
                   mode, interval, output_dir, web_dir)
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@location_options
@click.option('--port', type=click.IntRange(1, 65535), default=HTTP_PORT,
              help=f'HTTP port [default: {HTTP_PORT}]')
def serve(interval, output_dir, web_dir, port):
    """Serve the slideshow page, rendered images and /api/info."""
    try:
        run_server(port, output_dir, web_dir, interval)
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--mode', type=click.Choice(MODES), default='legacy',
              help='Must match the mode used by the sender [default: legacy]')
@click.option('--poll-interval', type=click.IntRange(min=1), default=CAPTURE_INTERVAL_MS,
              help=f'Screen capture interval in ms [default: {CAPTURE_INTERVAL_MS}]')
@click.option('--idle-timeout', type=click.FloatRange(min=0), default=IDLE_TIMEOUT_SECONDS,
              help=f'Seconds without a new code before finishing [default: {IDLE_TIMEOUT_SECONDS}]')
@click.option('--output-dir', type=click.Path(file_okay=False), default='.',
              help='Directory for the received file [default: current directory]')
@click.option('-v', '--verbose', is_flag=True, help='Print per-capture debug output')
def receive(mode, poll_interval, idle_timeout, output_dir, verbose):
    """Capture the screen, collect QR codes and rebuild the file.

    Runs until no new code has appeared for the idle timeout.

    Example:
        qr-screen-transfer receive
        qr-screen-transfer receive --mode indexed
    """
    try:
        click.echo(f"\n{'='*60}")
        click.echo("QR SCREEN TRANSFER - RECEIVER")
        click.echo(f"{'='*60}")

        frame_source = ScreenFrameSource()
        # Fail fast when no screen can be captured
        frame_source.capture_frame()

        def report_progress(count, payload):
            click.echo(f"[received] chunk #{count:>3} | size: {len(payload)} chars | collected: {count}")

        session = ReceiverSession(idle_timeout=idle_timeout, mode=mode, on_progress=report_progress)

        click.echo("Watching the screen for QR codes...")
        run_capture_loop(session, frame_source, PyzbarDecoder(),
                         poll_interval=poll_interval / 1000, verbose=verbose)

        click.echo(f"\nTransfer finished, rebuilding file from {len(session.received)} chunks...")
        file_data = session.finish()
        output_path = write_recovered_file(file_data, output_dir)

        click.echo(f"\n{'='*60}")
        click.echo("FILE RECEIVED")
        click.echo(f"{'='*60}")
        click.echo(f"File name:  {output_path}")
        click.echo(f"Size:       {format_file_size(len(file_data))}")
        click.echo(f"Chunks:     {len(session.received)}")
        if mode == 'indexed':
            click.echo(f"Verification: PASS (MD5: {session.file_md5})")
        click.echo(f"{'='*60}\n")

    except KeyboardInterrupt:
        click.echo("\nInterrupted, nothing written.", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)


if __name__ == '__main__':
    cli()
