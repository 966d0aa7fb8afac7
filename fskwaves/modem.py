# modem.py
#
# M-ary frequency shift keying (MFSK) modulation and demodulation.
#
# Every symbol carries `order` bits and is sent as a burst of one of
# 2**order sine tones, spaced `freq_spacing` Hz apart above `base_freq`.
# Each tone keeps its own phase accumulator across encode calls, so a tone
# that comes back later picks up where it left off instead of clicking.
#
# Decoding correlates every symbol-sized window against each tone and keeps
# the strongest one. There is no framing, sync detection or error
# correction: the decoder assumes window 0 starts exactly on symbol 0.

import logging
import math
from dataclasses import dataclass, field

import numpy as np

from fskwaves.errors import ConfigurationError

logger = logging.getLogger(__name__)

# --- Default configuration ---
SAMPLE_RATE = 48000      # Samples per second
BASE_FREQ = 1000.0       # Frequency of symbol 0 (Hz)
FREQ_SPACING = 200.0     # Distance between adjacent symbol tones (Hz)
ORDER = 2                # Bits per symbol
MAX_ORDER = 12           # Largest supported order (4096 tones)
BAUD_RATE = 100.0        # Symbols per second

ULTRASONIC_BASE_FREQ = 22000.0
ULTRASONIC_FREQ_SPACING = 500.0

AMPLITUDE = 0.5          # Peak amplitude of every symbol burst
TWO_PI = 2 * math.pi


@dataclass(frozen=True)
class Config:
    """Modem parameters. All five are required; see default_config().

    Attributes:
        base_freq: Frequency of symbol 0 in Hz
        freq_spacing: Spacing between consecutive symbol tones in Hz
        order: Bits per symbol; the tone table has 2**order entries
        baud_rate: Symbols per second
        sample_rate: Audio samples per second
    """

    base_freq: float
    freq_spacing: float
    order: int
    baud_rate: float
    sample_rate: int

    def __post_init__(self):
        if isinstance(self.order, bool) or not isinstance(self.order, int):
            raise ConfigurationError(f"order must be an integer, got {self.order!r}")
        if not 1 <= self.order <= MAX_ORDER:
            raise ConfigurationError(f"order must be between 1 and {MAX_ORDER}, got {self.order}")
        if self.baud_rate <= 0:
            raise ConfigurationError(f"baud_rate must be positive, got {self.baud_rate}")
        if self.sample_rate <= 0:
            raise ConfigurationError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.base_freq <= 0:
            raise ConfigurationError(f"base_freq must be positive, got {self.base_freq}")
        if self.freq_spacing <= 0:
            raise ConfigurationError(f"freq_spacing must be positive, got {self.freq_spacing}")
        if self.symbol_period < 1:
            raise ConfigurationError(
                f"baud_rate {self.baud_rate} is too high for sample_rate {self.sample_rate}"
            )

    @property
    def num_symbols(self):
        return 1 << self.order

    @property
    def symbol_period(self):
        """Samples per symbol, rounded half up."""
        return math.floor(self.sample_rate / self.baud_rate + 0.5)

    @property
    def highest_freq(self):
        return self.base_freq + (self.num_symbols - 1) * self.freq_spacing

    @property
    def aliased(self):
        """True when the top tone is at or above Nyquist and will fold back."""
        return self.highest_freq >= self.sample_rate / 2


def default_config():
    """Audible band: 1000-1600 Hz, 2 bits per symbol, 100 baud at 48 kHz."""
    return Config(
        base_freq=BASE_FREQ,
        freq_spacing=FREQ_SPACING,
        order=ORDER,
        baud_rate=BAUD_RATE,
        sample_rate=SAMPLE_RATE,
    )


def ultrasonic_config():
    """Near-ultrasonic band: 22000-23500 Hz at 48 kHz."""
    return Config(
        base_freq=ULTRASONIC_BASE_FREQ,
        freq_spacing=ULTRASONIC_FREQ_SPACING,
        order=ORDER,
        baud_rate=BAUD_RATE,
        sample_rate=SAMPLE_RATE,
    )


@dataclass
class DecodeResult:
    """Decoded bytes plus the per-symbol decisions that produced them."""

    data: bytes
    symbols: np.ndarray = field(repr=False)
    confidence: np.ndarray = field(repr=False)

    @property
    def mean_confidence(self):
        if self.confidence.size == 0:
            return 0.0
        return float(np.mean(self.confidence))


class Modem:
    """An MFSK encoder/decoder bound to one Config.

    The configuration never changes after construction. The per-tone phase
    accumulators do: every encode() call continues from the phases the
    previous call left behind.
    """

    def __init__(self, config):
        self.config = config
        self.symbol_period = config.symbol_period
        self._frequencies = np.array(
            [config.base_freq + i * config.freq_spacing for i in range(config.num_symbols)],
            dtype=np.float64,
        )
        self.phase = [0.0] * config.num_symbols

        # Correlation references, one row per tone, phase 0 at window start.
        n = np.arange(self.symbol_period, dtype=np.float64)
        self._references = np.sin(
            TWO_PI * self._frequencies[:, np.newaxis] * n[np.newaxis, :] / config.sample_rate
        )

        if config.aliased:
            logger.warning(
                "Top tone %.0f Hz is above Nyquist (%.0f Hz) and will alias",
                config.highest_freq, config.sample_rate / 2,
            )
        logger.debug(
            "Modem ready: %d tones %.0f-%.0f Hz, %d samples/symbol",
            config.num_symbols, self._frequencies[0], self._frequencies[-1], self.symbol_period,
        )

    @property
    def frequencies(self):
        """A copy of the tone table, indexed by symbol value."""
        return self._frequencies.copy()

    def reset_phase(self):
        self.phase = [0.0] * self.config.num_symbols

    def bytes_to_symbols(self, data):
        """Split data into order-bit symbols, MSB first, zero-padding the tail."""
        order = self.config.order
        bits = np.unpackbits(np.frombuffer(bytes(data), dtype=np.uint8))
        if bits.size % order:
            bits = np.concatenate([bits, np.zeros(order - bits.size % order, dtype=np.uint8)])
        weights = 1 << np.arange(order - 1, -1, -1)
        return bits.reshape(-1, order).astype(np.int64) @ weights

    def symbols_to_bytes(self, symbols):
        """Pack symbols back into bytes, MSB first. Trailing bits are kept."""
        order = self.config.order
        symbols = np.asarray(symbols, dtype=np.int64)
        if symbols.size == 0:
            return b""
        shifts = np.arange(order - 1, -1, -1)
        bits = ((symbols[:, np.newaxis] >> shifts) & 1).astype(np.uint8)
        return np.packbits(bits.ravel()).tobytes()

    def encode(self, data):
        """Modulate data into float32 samples in [-0.5, 0.5].

        Not a pure function: the phase of each tone carries over to the next
        call on this modem.
        """
        symbols = self.bytes_to_symbols(data)
        period = self.symbol_period
        output = np.zeros(len(symbols) * period, dtype=np.float32)
        phases = np.empty(period, dtype=np.float64)

        for index, symbol in enumerate(symbols):
            increment = TWO_PI * self._frequencies[symbol] / self.config.sample_rate
            phase = self.phase[symbol]
            for i in range(period):
                phases[i] = phase
                phase += increment
                if phase >= TWO_PI:
                    phase -= TWO_PI
            self.phase[symbol] = phase
            output[index * period:(index + 1) * period] = AMPLITUDE * np.sin(phases)

        logger.debug("Encoded %d bytes into %d symbols (%d samples)", len(data), len(symbols), len(output))
        return output

    def correlate(self, samples):
        """Correlation magnitude of every full window against every tone.

        Returns an array of shape (windows, 2**order). A trailing partial
        window is ignored.
        """
        samples = np.asarray(samples, dtype=np.float64).ravel()
        period = self.symbol_period
        count = len(samples) // period
        windows = samples[:count * period].reshape(count, period)
        return np.abs(windows @ self._references.T) / period

    def detect_symbols(self, samples):
        scores = self.correlate(samples)
        # argmax keeps the first of equal maxima, so ties go to the lowest tone.
        return np.argmax(scores, axis=1) if len(scores) else np.zeros(0, dtype=np.int64)

    def decode(self, samples):
        """Demodulate samples back into bytes.

        Assumes samples[0] sits on a symbol boundary. Returns b"" when fewer
        than one symbol period is given.
        """
        return self.symbols_to_bytes(self.detect_symbols(samples))

    def decode_with_confidence(self, samples):
        """Like decode(), but also reports how clearly each symbol won.

        Confidence is 1 - second_best / best per window, so 0 means a tie and
        1 means only one tone was present.
        """
        scores = self.correlate(samples)
        if len(scores) == 0:
            empty = np.zeros(0)
            return DecodeResult(b"", empty.astype(np.int64), empty)

        symbols = np.argmax(scores, axis=1)
        ranked = np.sort(scores, axis=1)
        best, second = ranked[:, -1], ranked[:, -2]
        confidence = np.zeros(len(best))
        nonzero = best > 0
        confidence[nonzero] = 1.0 - second[nonzero] / best[nonzero]
        return DecodeResult(self.symbols_to_bytes(symbols), symbols, confidence)


def mix_signals(signals, gains=None):
    """Sum signals sample by sample, as a shared acoustic medium would.

    Shorter signals are zero-padded to the longest one. gains, if given,
    scales each signal before summing.
    """
    signals = [np.asarray(s, dtype=np.float32).ravel() for s in signals]
    if not signals:
        return np.zeros(0, dtype=np.float32)
    if gains is None:
        gains = [1.0] * len(signals)
    if len(gains) != len(signals):
        raise ValueError(f"got {len(gains)} gains for {len(signals)} signals")

    mixed = np.zeros(max(len(s) for s in signals), dtype=np.float32)
    for signal, gain in zip(signals, gains):
        mixed[:len(signal)] += np.float32(gain) * signal
    return mixed
