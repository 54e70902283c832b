"""
Tests for the capture loop and the QR codec adapters
"""

import os
import sys
import random
import tempfile

import numpy as np
import pytest
from PIL import Image

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import qr_screen_transfer as qst
from tests.fakes import FakeClock, ScriptedFrameSource, ScriptedDecoder, DECODE_FAILURE


def random_bytes(size, seed=3):
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(size))


class ImageFrameSource(qst.FrameSource):
    """Shows one fixed RGB image."""

    def __init__(self, image):
        self.frame = np.asarray(image.convert('RGB'))

    def capture_frame(self):
        return self.frame


class TestGreyscale:
    """Luminance conversion"""

    def test_channel_weights(self):
        frame = np.array([[[255, 0, 0], [0, 255, 0], [0, 0, 255], [255, 255, 255]]], dtype=np.uint8)
        grey = qst.to_greyscale(frame)

        assert grey.shape == (1, 4)
        assert abs(int(grey[0, 0]) - 76) <= 1
        assert abs(int(grey[0, 1]) - 150) <= 1
        assert abs(int(grey[0, 2]) - 29) <= 1
        assert grey[0, 3] == 255

    def test_alpha_channel_ignored(self):
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        rgba[..., :3] = 200
        rgba[..., 3] = 17

        assert (qst.to_greyscale(rgba) == 200).all()

    def test_greyscale_passthrough(self):
        grey = np.full((3, 3), 9, dtype=np.uint8)
        assert qst.to_greyscale(grey) is grey

    def test_unsupported_shape(self):
        with pytest.raises(ValueError):
            qst.to_greyscale(np.zeros((2, 2, 2), dtype=np.uint8))


class TestCaptureTick:
    """Single tick outcomes"""

    def test_outcomes(self):
        source = ScriptedFrameSource([None, "payload", DECODE_FAILURE])
        decoder = ScriptedDecoder(source)

        assert isinstance(qst.capture_tick(source, decoder), qst.NoSymbolFound)

        decoded = qst.capture_tick(source, decoder)
        assert isinstance(decoded, qst.Decoded)
        assert decoded.payload == "payload"

        failure = qst.capture_tick(source, decoder)
        assert isinstance(failure, qst.DecodeFailure)
        assert "unreadable" in failure.reason

    def test_capture_error_propagates(self):
        source = ScriptedFrameSource([qst.CaptureError("screen locked")])

        with pytest.raises(qst.CaptureError):
            qst.capture_tick(source, ScriptedDecoder(source))


class TestCaptureLoop:
    """Driving the session from scripted frames"""

    def run(self, script, idle_timeout=3, mode='legacy', max_ticks=1000, poll_interval=0.05):
        clock = FakeClock()
        session = qst.ReceiverSession(idle_timeout=idle_timeout, mode=mode, clock=clock)
        source = ScriptedFrameSource(script)
        ticks = qst.run_capture_loop(session, source, ScriptedDecoder(source),
                                     poll_interval=poll_interval, sleep=clock.sleep,
                                     max_ticks=max_ticks)
        return session, ticks, clock

    def test_noisy_stream_reassembles(self):
        data = random_bytes(4500)
        a, b, c = qst.encode(data, chunk_size=2000)
        script = [None, a, a, a, None, DECODE_FAILURE, b, b,
                  qst.CaptureError("grab failed"), b, None, c, c, c]

        session, ticks, _ = self.run(script)

        assert session.state is qst.SessionState.FINALIZING
        assert session.received == [a, b, c]
        assert session.finish() == data
        assert ticks < 1000

    def test_stops_right_after_idle_gap(self):
        session, ticks, clock = self.run(["only"], poll_interval=0.0625)

        # New chunk on tick 1; 48 sleeps reach exactly 3s, the 49th exceeds it
        assert session.state is qst.SessionState.FINALIZING
        assert ticks == 50
        assert len(clock.sleeps) == 49
        assert clock.sleeps[0] == 0.0625

    def test_nothing_seen_keeps_polling(self):
        session, ticks, _ = self.run([], max_ticks=200)

        assert ticks == 200
        assert session.state is qst.SessionState.COLLECTING
        with pytest.raises(qst.NoDataError):
            session.finish()

    def test_tick_errors_are_logged_not_fatal(self, capsys):
        script = [qst.CaptureError("no frame"), DECODE_FAILURE, "chunk"]
        session, _, _ = self.run(script)

        err = capsys.readouterr().err
        assert "no frame" in err
        assert "[decode failed]" in err
        assert session.received == ["chunk"]

    def test_indexed_mode_finishes_without_waiting(self):
        data = random_bytes(4500)
        payloads = qst.encode_indexed(data, chunk_size=2000)
        script = [payloads[1], payloads[1], payloads[0], payloads[2]]

        session, ticks, _ = self.run(script, mode='indexed')

        assert ticks == 4
        assert session.finish() == data


class TestQRCodec:
    """Real rendering and decoding through qrcode and pyzbar"""

    def test_png_render_and_decode(self):
        payload = qst.encode(random_bytes(300), chunk_size=2000)[0]
        image = qst.PngSymbolEncoder('M').render(payload)

        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'qr_001.png')
            image.save(path)
            loaded = Image.open(path)
            loaded.load()

        outcome = qst.capture_tick(ImageFrameSource(loaded), qst.PyzbarDecoder())

        assert isinstance(outcome, qst.Decoded)
        assert outcome.payload == payload

    def test_blank_frame_has_no_symbol(self):
        blank = Image.new('RGB', (200, 200), 'white')
        outcome = qst.capture_tick(ImageFrameSource(blank), qst.PyzbarDecoder())

        assert isinstance(outcome, qst.NoSymbolFound)

    def test_svg_render(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'qr_001.svg')
            qst.SvgSymbolEncoder('L').render("SGVsbG8=").save(path)

            with open(path, 'rb') as f:
                content = f.read()

        assert b'<svg' in content

    def test_full_indexed_chunk_round_trips_at_default_level(self):
        """A CHUNK_SIZE chunk plus header renders at M and decodes back"""
        payloads = qst.encode_indexed(random_bytes(3000), chunk_size=qst.CHUNK_SIZE)
        payload = payloads[0]
        assert len(qst.parse_indexed_payload(payload)['data']) == qst.CHUNK_SIZE

        qst.check_payload_capacity([payload], 'M', qst.indexed_header_length(len(payloads)))
        image = qst.PngSymbolEncoder('M').render(payload)
        outcome = qst.capture_tick(ImageFrameSource(image), qst.PyzbarDecoder())

        assert isinstance(outcome, qst.Decoded)
        assert outcome.payload == payload

    def test_full_chunk_overflows_at_high_levels(self):
        payloads = qst.encode_indexed(random_bytes(3000), chunk_size=qst.CHUNK_SIZE)
        header_length = qst.indexed_header_length(len(payloads))

        for level in ('Q', 'H'):
            max_chunk = qst.QR_MAX_BYTES[level] - header_length
            with pytest.raises(qst.PayloadTooLargeError, match=f"--chunk-size {max_chunk} "):
                qst.check_payload_capacity(payloads, level, header_length)

    def test_capacity_limit_is_inclusive(self):
        qst.check_payload_capacity(["A" * qst.QR_MAX_BYTES['Q']], 'Q')

        with pytest.raises(qst.PayloadTooLargeError, match="--chunk-size 1663 "):
            qst.check_payload_capacity(["A" * (qst.QR_MAX_BYTES['Q'] + 1)], 'Q')

    def test_header_length_matches_framing(self):
        for size in (10, 3000, 40000):
            payloads = qst.encode_indexed(random_bytes(size), chunk_size=100)
            last = payloads[-1]
            header = qst.parse_indexed_payload(last)
            assert len(last) - len(header['data']) == qst.indexed_header_length(len(payloads))

    def test_located_but_unreadable_code_is_decode_failure(self, monkeypatch):
        """A code the locator finds but pyzbar cannot read is not NoSymbolFound"""
        image = qst.PngSymbolEncoder('M').render("located but unreadable")
        monkeypatch.setattr(qst.pyzbar, 'decode', lambda *args, **kwargs: [])

        outcome = qst.capture_tick(ImageFrameSource(image), qst.PyzbarDecoder())

        assert isinstance(outcome, qst.DecodeFailure)
        assert "could not be decoded" in outcome.reason

    def test_invalid_error_correction(self):
        with pytest.raises(ValueError):
            qst.PngSymbolEncoder('X')


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
