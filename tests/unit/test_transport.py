import queue
import sys
import threading
import time
import types

import numpy as np
import pytest
from unittest.mock import Mock, patch

from fskwaves import transport
from fskwaves.errors import DeviceError
from fskwaves.modem import Modem, default_config
from fskwaves.transport import (
    CHUNK_SYMBOLS,
    DuplexSession,
    OutboundPolicy,
    Receiver,
    Transmitter,
    _fill_output,
)
from fskwaves.wav import float_to_pcm16


MESSAGE = b"Hello, FSK!"


@pytest.fixture
def modem():
    return Modem(default_config())


@pytest.fixture
def mock_open():
    with patch('fskwaves.transport._open_stream') as opener:
        opener.return_value = Mock()
        yield opener


def block(frames):
    return np.zeros((frames, 1), dtype=np.int16)


class FakePortAudioError(Exception):
    pass


def fake_sounddevice(**streams):
    module = types.SimpleNamespace(
        PortAudioError=FakePortAudioError,
        InputStream=Mock(),
        OutputStream=Mock(),
        Stream=Mock(),
    )
    for name, value in streams.items():
        setattr(module, name, value)
    return module


class TestStreamHelpers:
    """Test cases for the device-frame helpers."""

    def test_fill_output_converts_and_pads(self):
        outdata = block(6)
        signal = np.array([0.5, -0.5, 2.0, -2.0], dtype=np.float32)

        cursor = _fill_output(outdata, signal, 0)

        assert cursor == 4
        assert outdata[:, 0].tolist() == [16383, -16383, 32767, -32767, 0, 0]

    def test_fill_output_past_end_is_silence(self):
        outdata = block(4)
        outdata[:] = 99
        assert _fill_output(outdata, np.ones(3, dtype=np.float32), 3) == 3
        assert not outdata.any()

    def test_open_stream_wraps_portaudio_errors(self):
        sd = fake_sounddevice(OutputStream=Mock(side_effect=FakePortAudioError("no device")))
        with patch.dict(sys.modules, {'sounddevice': sd}):
            with pytest.raises(DeviceError, match="output"):
                transport._open_stream('output', samplerate=48000)

    def test_open_stream_closes_on_start_failure(self):
        stream = Mock()
        stream.start.side_effect = FakePortAudioError("busy")
        sd = fake_sounddevice(InputStream=Mock(return_value=stream))
        with patch.dict(sys.modules, {'sounddevice': sd}):
            with pytest.raises(DeviceError, match="start"):
                transport._open_stream('input', samplerate=48000)
        stream.close.assert_called_once()

    def test_open_stream_is_mono_int16(self):
        sd = fake_sounddevice()
        with patch.dict(sys.modules, {'sounddevice': sd}):
            stream = transport._open_stream('duplex', samplerate=48000)
        sd.Stream.assert_called_once_with(channels=1, dtype='int16', samplerate=48000)
        stream.start.assert_called_once()

    def test_close_stream_swallows_teardown_errors(self):
        stream = Mock()
        stream.stop.side_effect = RuntimeError("gone")
        transport._close_stream(stream)


class TestTransmitter:
    """Test cases for one-shot playback."""

    def test_transmit_opens_and_closes_stream(self, modem, mock_open):
        transmitter = Transmitter(modem, guard_interval=0.0)

        assert transmitter.transmit(b"Hi") is True

        mock_open.assert_called_once()
        args, kwargs = mock_open.call_args
        assert args == ('output',)
        assert kwargs['samplerate'] == 48000
        stream = mock_open.return_value
        stream.stop.assert_called_once()
        stream.close.assert_called_once()

    def test_callback_plays_signal_then_silence(self, modem, mock_open):
        transmitter = Transmitter(modem, guard_interval=0.0)
        transmitter.transmit(b"Hi")
        expected = float_to_pcm16(Modem(default_config()).encode(b"Hi"))

        played = []
        while transmitter.remaining:
            outdata = block(1000)
            transmitter._callback(outdata, 1000, None, None)
            played.append(outdata[:, 0].copy())
        played = np.concatenate(played)

        assert np.array_equal(played[:len(expected)], expected)
        assert not played[len(expected):].any()

    def test_device_error_propagates(self, modem, mock_open):
        mock_open.side_effect = DeviceError("no playback device")
        with pytest.raises(DeviceError):
            Transmitter(modem).transmit(b"Hi")

    def test_cancel_ends_transmit_early(self, modem, mock_open):
        transmitter = Transmitter(modem, guard_interval=30.0)
        results = []
        worker = threading.Thread(target=lambda: results.append(transmitter.transmit(b"Hi")))
        worker.start()

        while not mock_open.called:
            threading.Event().wait(0.01)
        transmitter.cancel()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert results == [False]
        mock_open.return_value.close.assert_called_once()


    def test_cancel_during_encode_is_kept(self, modem, mock_open):
        transmitter = Transmitter(modem, guard_interval=30.0)
        encode = modem.encode

        def encode_then_cancel(data):
            transmitter.cancel()
            return encode(data)

        with patch.object(modem, 'encode', side_effect=encode_then_cancel):
            started = time.monotonic()
            assert transmitter.transmit(b"Hi") is False

        assert time.monotonic() - started < 5
        mock_open.return_value.close.assert_called_once()


class TestReceiver:
    """Test cases for fixed-cadence chunk decoding."""

    def test_chunk_size(self, modem):
        assert Receiver(modem).chunk_size == CHUNK_SYMBOLS * 480

    def test_waits_for_four_symbols(self, modem):
        callback = Mock()
        receiver = Receiver(modem, callback)

        assert receiver.feed(np.zeros(1000, dtype=np.float32)) is None
        callback.assert_not_called()

        assert receiver.feed(np.zeros(1000, dtype=np.float32)) == b"\x00"
        callback.assert_called_once_with(b"\x00")

    def test_aligned_chunks_decode_message(self, modem):
        """Chunks that happen to start on symbol boundaries decode cleanly."""
        signal = Modem(default_config()).encode(MESSAGE)
        received = []
        receiver = Receiver(modem, received.append)

        for start in range(0, len(signal), receiver.chunk_size):
            receiver.feed(signal[start:start + receiver.chunk_size])

        assert b"".join(received) == MESSAGE

    def test_unaligned_frames_lose_data(self, modem):
        """Each decode drops its partial symbol, so the message falls apart."""
        signal = Modem(default_config()).encode(MESSAGE)
        received = []
        receiver = Receiver(modem, received.append)

        for start in range(0, len(signal), 1000):
            receiver.feed(signal[start:start + 1000])

        assert len(received) == 10
        assert b"".join(received) != MESSAGE

    def test_reset_clears_accumulator(self, modem):
        callback = Mock()
        receiver = Receiver(modem, callback)

        receiver.feed(np.zeros(1500, dtype=np.float32))
        receiver.reset()
        assert receiver.feed(np.zeros(1500, dtype=np.float32)) is None
        callback.assert_not_called()

    def test_worker_decodes_pushed_frames(self, modem, mock_open):
        signal = Modem(default_config()).encode(MESSAGE)
        received = queue.Queue()
        receiver = Receiver(modem, received.put)

        receiver.start()
        try:
            assert mock_open.call_args[0] == ('input',)
            assert receiver.is_running
            for start in range(0, len(signal), receiver.chunk_size):
                frames = float_to_pcm16(signal[start:start + receiver.chunk_size]).reshape(-1, 1)
                receiver._capture(frames, len(frames), None, None)
            chunks = [received.get(timeout=5) for _ in range(len(MESSAGE))]
        finally:
            receiver.close()

        assert b"".join(chunks) == MESSAGE
        assert not receiver.is_running

    def test_start_failure_leaves_receiver_stopped(self, modem, mock_open):
        mock_open.side_effect = DeviceError("no capture device")
        receiver = Receiver(modem)

        with pytest.raises(DeviceError):
            receiver.start()
        assert not receiver.is_running

    def test_stop_is_idempotent(self, modem, mock_open):
        receiver = Receiver(modem)
        receiver.start()
        receiver.stop()
        receiver.stop()
        receiver.close()
        mock_open.return_value.close.assert_called_once()


class TestDuplexSession:
    """Test cases for duplex send/receive semantics."""

    def test_inbox_drops_when_full(self, modem):
        session = DuplexSession(modem)

        for i in range(11):
            session._deliver(f"msg {i}".encode())

        assert session.messages.qsize() == 10
        assert session.dropped == 1
        received = [session.get_message(timeout=0) for _ in range(10)]
        assert received == [f"msg {i}" for i in range(10)]
        assert session.get_message(timeout=0) is None

    def test_undecodable_bytes_are_not_queued(self, modem):
        session = DuplexSession(modem)
        session._deliver(b"\xff\xfe")
        assert session.messages.empty()

    def test_send_replaces_message_in_flight(self, modem):
        session = DuplexSession(modem)
        reference = Modem(default_config())
        reference.encode(b"first")
        expected = float_to_pcm16(reference.encode(b"second"))

        session.send_message("first")
        session._playback(block(480))
        session.send_message("second")

        outdata = session._playback(block(480))
        assert np.array_equal(outdata[:, 0], expected[:480])

    def test_silence_after_message(self, modem):
        session = DuplexSession(modem)
        session.send_message("x")  # 4 symbols

        outdata = session._playback(block(2048))
        assert outdata[:1920].any()
        assert not outdata[1920:].any()
        assert not session.in_flight

    def test_enqueue_policy_plays_in_order(self, modem):
        session = DuplexSession(modem, policy=OutboundPolicy.ENQUEUE)
        reference = Modem(default_config())
        expected = float_to_pcm16(np.concatenate([reference.encode(b"a"), reference.encode(b"b")]))

        session.send_message("a")
        session.send_message("b")
        outdata = session._playback(block(len(expected) + 100))

        assert np.array_equal(outdata[:len(expected), 0], expected)
        assert not outdata[len(expected):].any()

    def test_reject_policy_refuses_while_busy(self, modem):
        session = DuplexSession(modem, policy=OutboundPolicy.REJECT)

        assert session.send_message("a") is True
        assert session.send_message("b") is False
        session._playback(block(1920))
        assert session.send_message("c") is True

    def test_callback_moves_frames_both_ways(self, modem):
        session = DuplexSession(modem)
        session.send_message("x")
        indata = np.ones((256, 1), dtype=np.int16)
        outdata = block(256)

        session._callback(indata, outdata, 256, None, None)

        assert session.receiver._frames.qsize() == 1
        assert outdata.any()

    def test_start_and_stop(self, modem, mock_open):
        session = DuplexSession(modem)

        session.start()
        assert session.is_running
        assert mock_open.call_args[0] == ('duplex',)

        session.close()
        session.close()
        assert not session.is_running
        mock_open.return_value.close.assert_called_once()

    def test_start_failure(self, modem, mock_open):
        mock_open.side_effect = DeviceError("no duplex device")
        session = DuplexSession(modem)

        with pytest.raises(DeviceError):
            session.start()
        assert not session.is_running
        assert not session.receiver.is_running
