# channels.py
#
# Several duplex sessions at once, one per frequency band, under a single
# user name.
#
# Channels share the air: what a microphone hears is the sum of every band
# being played. Nothing here schedules or arbitrates access. Two channels
# stay apart only because their tone tables do not overlap.

import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field

from fskwaves.errors import ChannelError, DeviceError, FSKError
from fskwaves.modem import Config, Modem, SAMPLE_RATE
from fskwaves.transport import DuplexSession, POLL_INTERVAL, Receiver

logger = logging.getLogger(__name__)

REMOTE_USER = "Remote"

# --- Activity monitor ---
ANALYSIS_BASE_FREQ = 18000.0
ANALYSIS_FREQ_SPACING = 100.0
ANALYSIS_BANDS = [18000.0 + 1000.0 * i for i in range(11)]  # 18-28 kHz
ACTIVITY_WINDOW = 10.0   # Seconds until activity fades to nothing


@dataclass(frozen=True)
class ChannelConfig:
    """A frequency band that one conversation uses.

    Attributes:
        id: Channel identifier, unique within a MultiChannelChat
        base_freq: Frequency of symbol 0 on this channel (Hz)
        freq_spacing: Spacing between the channel's symbol tones (Hz)
        name: Human-readable label
    """

    id: int
    base_freq: float
    freq_spacing: float
    name: str = ""

    def modem_config(self, order, baud_rate, sample_rate=SAMPLE_RATE):
        return Config(
            base_freq=self.base_freq,
            freq_spacing=self.freq_spacing,
            order=order,
            baud_rate=baud_rate,
            sample_rate=sample_rate,
        )


@dataclass(frozen=True)
class DuplexPair:
    """Transmit and receive bands for one end of a point-to-point link."""

    tx: ChannelConfig
    rx: ChannelConfig


def predefined_channels():
    """Common near-ultrasonic channels.

    At 48 kHz the 24 kHz and 26 kHz channels sit at or above Nyquist and
    fold back into the lower bands; use a higher sample rate for them.
    """
    return [
        ChannelConfig(id=1, base_freq=22000, freq_spacing=500, name="Channel 1 (22kHz)"),
        ChannelConfig(id=2, base_freq=24000, freq_spacing=500, name="Channel 2 (24kHz)"),
        ChannelConfig(id=3, base_freq=26000, freq_spacing=500, name="Channel 3 (26kHz)"),
        ChannelConfig(id=4, base_freq=18000, freq_spacing=400, name="Channel 4 (18kHz)"),
        ChannelConfig(id=5, base_freq=20000, freq_spacing=400, name="Channel 5 (20kHz)"),
    ]


def duplex_channels():
    """Band pairs for two stations: A sends where B listens and vice versa."""
    return {
        "A": DuplexPair(
            tx=ChannelConfig(id=1, base_freq=22000, freq_spacing=500, name="TX-A"),
            rx=ChannelConfig(id=2, base_freq=24000, freq_spacing=500, name="RX-A"),
        ),
        "B": DuplexPair(
            tx=ChannelConfig(id=2, base_freq=24000, freq_spacing=500, name="TX-B"),
            rx=ChannelConfig(id=1, base_freq=22000, freq_spacing=500, name="RX-B"),
        ),
    }


class ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read_locked(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write_locked(self):
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class BroadcastResult:
    """Outcome of a broadcast, per channel id. None means the send succeeded."""

    results: dict = field(default_factory=dict)

    @property
    def ok(self):
        return [channel_id for channel_id, error in self.results.items() if error is None]

    @property
    def failed(self):
        return {channel_id: error for channel_id, error in self.results.items() if error is not None}

    @property
    def last_error(self):
        errors = list(self.failed.values())
        return errors[-1] if errors else None

    def __bool__(self):
        return bool(self.results) and not self.failed


@dataclass
class _ActiveChannel:
    config: ChannelConfig
    session: object
    listener: threading.Thread


class MultiChannelChat:
    """Chat over several frequency channels at once.

    Every message received on any channel is passed to
    msg_callback(channel_id, user, text) from that channel's listener thread.
    """

    def __init__(self, username, msg_callback=None, sample_rate=SAMPLE_RATE, session_factory=DuplexSession):
        self.username = username
        self.msg_callback = msg_callback
        self.sample_rate = sample_rate
        self.session_factory = session_factory
        self._channels = {}
        self._lock = ReadWriteLock()

    def join_channel(self, channel_config, order, baud_rate):
        """Start a duplex session on channel_config's band.

        Raises DeviceError if the audio device cannot be started; the channel
        is then not joined.
        """
        config = channel_config.modem_config(order, baud_rate, self.sample_rate)
        channel_id = channel_config.id

        with self._lock.write_locked():
            if channel_id in self._channels:
                raise ChannelError(f"already connected to channel {channel_id}")

            session = self.session_factory(Modem(config))
            try:
                session.start()
            except DeviceError as e:
                session.close()
                raise DeviceError(f"failed to start chat session for channel {channel_id}: {e}") from e

            listener = threading.Thread(
                target=self._forward,
                args=(channel_id, session),
                name=f"fsk-channel-{channel_id}",
                daemon=True,
            )
            listener.start()
            self._channels[channel_id] = _ActiveChannel(channel_config, session, listener)

        logger.info("Joined channel %d (%s)", channel_id, channel_config.name or f"{channel_config.base_freq:.0f} Hz")

    def _forward(self, channel_id, session):
        while session.is_running:
            text = session.get_message(timeout=POLL_INTERVAL)
            if text is None or self.msg_callback is None:
                continue
            try:
                self.msg_callback(channel_id, REMOTE_USER, text)
            except Exception:
                logger.exception("Message callback failed on channel %d", channel_id)

    def _join_listener(self, channel):
        if channel.listener is not threading.current_thread():
            channel.listener.join()

    def leave_channel(self, channel_id):
        with self._lock.write_locked():
            channel = self._channels.pop(channel_id, None)
            if channel is None:
                raise ChannelError(f"not connected to channel {channel_id}")
            channel.session.close()
        self._join_listener(channel)
        logger.info("Left channel %d", channel_id)

    def _send_locked(self, channel_id, message):
        channel = self._channels.get(channel_id)
        if channel is None:
            raise ChannelError(f"not connected to channel {channel_id}")
        if not channel.session.send_message(f"{self.username}: {message}"):
            raise ChannelError(f"channel {channel_id} is busy")

    def send_message(self, channel_id, message):
        """Send message, prefixed with this user's name, on one channel."""
        with self._lock.read_locked():
            self._send_locked(channel_id, message)

    def broadcast_message(self, message):
        """Send message on every active channel, carrying on past failures."""
        result = BroadcastResult()
        with self._lock.read_locked():
            for channel_id in list(self._channels):
                try:
                    self._send_locked(channel_id, message)
                    result.results[channel_id] = None
                except FSKError as e:
                    logger.warning("Broadcast to channel %d failed: %s", channel_id, e)
                    result.results[channel_id] = e
        return result

    def active_channels(self):
        """Ids of joined channels, in the order they were joined."""
        with self._lock.read_locked():
            return list(self._channels)

    def channel(self, channel_id):
        with self._lock.read_locked():
            channel = self._channels.get(channel_id)
        if channel is None:
            raise ChannelError(f"not connected to channel {channel_id}")
        return channel.config

    def close(self):
        with self._lock.write_locked():
            channels = list(self._channels.values())
            self._channels = {}
            for channel in channels:
                try:
                    channel.session.close()
                except Exception as e:
                    logger.warning("Error closing channel %d: %s", channel.config.id, e)
        for channel in channels:
            self._join_listener(channel)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class ChannelAnalyzer:
    """Watches the near-ultrasonic range for traffic.

    A listener on the 18 kHz band decodes whatever it hears. Any decoded
    chunk that is not all zero bytes marks every band from 18 to 28 kHz as
    active. get_channel_activity() reports each band's level, falling
    linearly from 1.0 to nothing over ACTIVITY_WINDOW seconds.
    """

    def __init__(self, sample_rate=SAMPLE_RATE, clock=time.time):
        self.modem = Modem(Config(
            base_freq=ANALYSIS_BASE_FREQ,
            freq_spacing=ANALYSIS_FREQ_SPACING,
            order=2,
            baud_rate=100,
            sample_rate=sample_rate,
        ))
        self.receiver = Receiver(self.modem, self._on_data)
        self._clock = clock
        self._lock = threading.Lock()
        self._last_seen = {}

    @property
    def is_running(self):
        return self.receiver.is_running

    def _on_data(self, data):
        # Silence decodes to NUL bytes.
        if not any(data):
            return
        now = self._clock()
        with self._lock:
            for band in ANALYSIS_BANDS:
                self._last_seen[band] = now

    def start_analysis(self):
        """Open the capture device. Raises DeviceError if it is unavailable."""
        self.receiver.start()
        logger.info("Channel analysis started")

    def get_channel_activity(self):
        """Band start frequency -> activity level in (0, 1]. Quiet bands are omitted."""
        now = self._clock()
        with self._lock:
            last_seen = dict(self._last_seen)
        activity = {}
        for band, seen in last_seen.items():
            age = now - seen
            if age < ACTIVITY_WINDOW:
                activity[band] = 1.0 - age / ACTIVITY_WINDOW
        return activity

    def stop(self):
        self.receiver.close()

    def __enter__(self):
        self.start_analysis()
        return self

    def __exit__(self, *exc_info):
        self.stop()
