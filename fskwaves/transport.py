# transport.py
#
# Streams the modem through a live sound card.
#
# The audio callbacks only move int16 frames in and out under a lock. Decoding
# happens on a worker thread fed by a frame queue, so a slow message handler
# cannot starve the audio device.
#
# Dependencies:
# pip install sounddevice numpy

import collections
import enum
import logging
import queue
import threading

import numpy as np

from fskwaves.errors import DeviceError
from fskwaves.wav import float_to_pcm16, pcm16_to_float

logger = logging.getLogger(__name__)

# --- Transport settings ---
CHUNK_SYMBOLS = 4        # Decode once this many symbol periods are buffered
GUARD_INTERVAL = 0.5     # Extra time (s) a transmission keeps the device open
INBOX_SIZE = 10          # Decoded messages a duplex session holds before dropping
POLL_INTERVAL = 0.5      # Worker queue timeout (s)


def _open_stream(kind, **kwargs):
    """Open and start a mono int16 sounddevice stream.

    kind is 'input', 'output' or 'duplex'. Raises DeviceError if PortAudio or
    the device is unavailable.
    """
    try:
        import sounddevice as sd
    except OSError as e:
        raise DeviceError(f"PortAudio library not available: {e}") from e

    factory = {'input': sd.InputStream, 'output': sd.OutputStream, 'duplex': sd.Stream}[kind]
    try:
        stream = factory(channels=1, dtype='int16', **kwargs)
    except sd.PortAudioError as e:
        raise DeviceError(f"failed to initialize {kind} device: {e}") from e
    try:
        stream.start()
    except sd.PortAudioError as e:
        stream.close()
        raise DeviceError(f"failed to start {kind} device: {e}") from e
    return stream


def _close_stream(stream):
    """Stop and close a stream. Failures are logged, not raised."""
    try:
        stream.stop()
        stream.close()
    except Exception as e:
        logger.warning("Error while closing audio stream: %s", e)


def _fill_output(outdata, signal, cursor):
    """Copy signal[cursor:] into an int16 output block, padding with silence.

    Returns the new cursor.
    """
    frames = len(outdata)
    chunk = signal[cursor:cursor + frames]
    outdata[:len(chunk)] = float_to_pcm16(chunk).reshape(-1, 1)
    outdata[len(chunk):] = 0
    return cursor + len(chunk)


class OutboundPolicy(enum.Enum):
    """What a duplex session does with a message sent while another plays."""

    REPLACE = "replace"  # Truncate the one in flight (last write wins)
    ENQUEUE = "enqueue"  # Play it after the one in flight
    REJECT = "reject"    # Refuse it


class Transmitter:
    """Plays encoded data once through an output device.

    transmit() blocks for the length of the signal plus a guard interval.
    It is not meant to be called from two threads at once.
    """

    def __init__(self, modem, guard_interval=GUARD_INTERVAL):
        self.modem = modem
        self.guard_interval = guard_interval
        self._lock = threading.Lock()
        self._signal = np.zeros(0, dtype=np.float32)
        self._cursor = 0
        self._cancelled = threading.Event()

    def _callback(self, outdata, frames, time, status):
        if status:
            logger.warning("Playback status: %s", status)
        with self._lock:
            self._cursor = _fill_output(outdata, self._signal, self._cursor)

    @property
    def remaining(self):
        """Samples not yet handed to the device."""
        with self._lock:
            return len(self._signal) - self._cursor

    def transmit(self, data):
        """Encode and play data. Returns False if cancel() cut it short."""
        self._cancelled.clear()
        with self._lock:
            self._signal = self.modem.encode(data)
            self._cursor = 0
            signal_length = len(self._signal)

        stream = _open_stream(
            'output',
            samplerate=self.modem.config.sample_rate,
            callback=self._callback,
        )
        try:
            duration = signal_length / self.modem.config.sample_rate + self.guard_interval
            logger.info("Transmitting %d bytes (%.2f s)", len(data), duration)
            cancelled = self._cancelled.wait(duration)
        finally:
            _close_stream(stream)

        if cancelled:
            logger.info("Transmission cancelled")
        return not cancelled

    def cancel(self):
        """Stop an in-flight transmit() from another thread."""
        self._cancelled.set()

    def close(self):
        self.cancel()


class Receiver:
    """Decodes audio from an input device in fixed four-symbol chunks.

    Captured frames accumulate until at least CHUNK_SYMBOLS symbol periods are
    buffered; then the whole buffer is decoded and cleared. The chunks are not
    aligned to anything the transmitter did, so a message only decodes cleanly
    when it happens to start on a chunk boundary.
    """

    def __init__(self, modem, callback=None):
        self.modem = modem
        self.callback = callback
        self._lock = threading.Lock()
        self._samples = []
        self._pending = 0
        self._frames = queue.Queue()
        self._stop = threading.Event()
        self._worker = None
        self._stream = None

    @property
    def chunk_size(self):
        return self.modem.symbol_period * CHUNK_SYMBOLS

    @property
    def is_running(self):
        return self._worker is not None

    def push_frames(self, indata):
        """Hand raw int16 device frames to the worker. Safe on the audio thread."""
        self._frames.put(np.array(indata, dtype=np.int16).reshape(-1))

    def feed(self, samples):
        """Append float samples and decode if a full chunk is buffered.

        Returns the decoded bytes, or None if nothing was decoded.
        """
        with self._lock:
            self._samples.append(np.asarray(samples, dtype=np.float32).reshape(-1))
            self._pending += self._samples[-1].size
            if self._pending < self.chunk_size:
                return None
            block = np.concatenate(self._samples)
            self._samples = []
            self._pending = 0

        decoded = self.modem.decode(block)
        if decoded and self.callback is not None:
            self.callback(decoded)
        return decoded

    def reset(self):
        """Drop buffered audio so the next decode starts fresh."""
        with self._lock:
            self._samples = []
            self._pending = 0
        while True:
            try:
                self._frames.get_nowait()
            except queue.Empty:
                break

    def _capture(self, indata, frames, time, status):
        if status:
            logger.warning("Capture status: %s", status)
        self.push_frames(indata)

    def _run(self):
        while not self._stop.is_set():
            try:
                frame = self._frames.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self.feed(pcm16_to_float(frame))
            except Exception:
                logger.exception("Error in the receive loop")

    def _start_worker(self):
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="fsk-receiver", daemon=True)
        self._worker.start()

    def _stop_worker(self):
        self._stop.set()
        if self._worker is not None:
            self._worker.join()
            self._worker = None

    def start(self):
        """Open the capture device and start decoding. Returns immediately."""
        if self.is_running:
            return
        self._stream = _open_stream(
            'input',
            samplerate=self.modem.config.sample_rate,
            callback=self._capture,
        )
        self._start_worker()
        logger.info("Receiver listening at %d Hz", self.modem.config.sample_rate)

    def stop(self):
        if self._stream is not None:
            _close_stream(self._stream)
            self._stream = None
        self._stop_worker()

    def close(self):
        self.stop()
        self.reset()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc_info):
        self.close()


class DuplexSession:
    """Simultaneous send and receive on one channel through one duplex stream.

    Incoming text lands in `messages`, a bounded queue; when it is full new
    messages are dropped rather than blocking capture.
    """

    def __init__(self, modem, policy=OutboundPolicy.REPLACE, inbox_size=INBOX_SIZE):
        self.modem = modem
        self.policy = policy
        self.messages = queue.Queue(maxsize=inbox_size)
        self.dropped = 0
        self.receiver = Receiver(modem, self._deliver)
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._signal = np.zeros(0, dtype=np.float32)
        self._cursor = 0
        self._pending = collections.deque()
        self._stream = None
        self._running = False

    @property
    def is_running(self):
        with self._lock:
            return self._running

    @property
    def in_flight(self):
        """True while an outbound message still has samples to play."""
        with self._lock:
            return self._cursor < len(self._signal) or bool(self._pending)

    def _deliver(self, data):
        text = data.decode('utf-8', errors='ignore')
        if not text:
            return
        try:
            self.messages.put_nowait(text)
        except queue.Full:
            self.dropped += 1
            logger.debug("Inbox full, dropped %r", text)

    def _playback(self, outdata):
        with self._lock:
            written = 0
            while True:
                start = self._cursor
                self._cursor = _fill_output(outdata[written:], self._signal, self._cursor)
                written += self._cursor - start
                if written >= len(outdata) or not self._pending:
                    break
                self._signal = self._pending.popleft()
                self._cursor = 0
        return outdata

    def _callback(self, indata, outdata, frames, time, status):
        if status:
            logger.warning("Duplex stream status: %s", status)
        self.receiver.push_frames(indata)
        self._playback(outdata)

    def send_message(self, message):
        """Encode message and start playing it. Returns False if rejected."""
        with self._send_lock:
            if self.policy is OutboundPolicy.REJECT and self.in_flight:
                logger.info("Outbound message rejected: another is still playing")
                return False
            signal = self.modem.encode(message.encode('utf-8'))
            with self._lock:
                busy = self._cursor < len(self._signal) or bool(self._pending)
                if self.policy is OutboundPolicy.ENQUEUE and busy:
                    self._pending.append(signal)
                else:
                    self._signal = signal
                    self._cursor = 0
                    self._pending.clear()
        return True

    def receive_messages(self):
        """The queue decoded text arrives on."""
        return self.messages

    def get_message(self, timeout=None):
        """Next decoded message, or None if none arrives within timeout."""
        try:
            return self.messages.get(timeout=timeout)
        except queue.Empty:
            return None

    def start(self):
        with self._lock:
            if self._running:
                return
        self._stream = _open_stream(
            'duplex',
            samplerate=self.modem.config.sample_rate,
            callback=self._callback,
        )
        self.receiver._start_worker()
        with self._lock:
            self._running = True
        logger.info(
            "Duplex session started on %.0f-%.0f Hz",
            self.modem.config.base_freq, self.modem.config.highest_freq,
        )

    def stop(self):
        with self._lock:
            self._running = False
        if self._stream is not None:
            _close_stream(self._stream)
            self._stream = None
        self.receiver._stop_worker()

    def close(self):
        self.stop()
        self.receiver.reset()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc_info):
        self.close()
