# scenarios.py
#
# Offline experiments on how channels interfere when they share the air.
#
# Each scenario encodes messages with independent modems, sums the waveforms
# as a room would, and decodes the mix with each receiving modem. Run at
# 96 kHz by default: at 48 kHz the 24 kHz and 26 kHz bands sit at or past
# Nyquist and alias onto the lower channels.

import logging
from dataclasses import dataclass, field

import numpy as np

from fskwaves.modem import Config, Modem, mix_signals
from fskwaves.wav import write_wav

logger = logging.getLogger(__name__)

SCENARIO_SAMPLE_RATE = 96000
SCENARIO_ORDER = 2
SCENARIO_BAUD_RATE = 100


@dataclass
class Outcome:
    label: str
    expected: bytes
    decoded: bytes

    @property
    def success(self):
        """True when the message comes through intact.

        The mix is as long as the longest message, so bytes decoded past
        the end of a shorter one are noise and are not compared.
        """
        return self.decoded[:len(self.expected)] == self.expected


@dataclass
class ScenarioResult:
    name: str
    mixed: np.ndarray = field(repr=False)
    sample_rate: int
    outcomes: list = field(default_factory=list)

    @property
    def all_succeeded(self):
        return all(outcome.success for outcome in self.outcomes)

    @property
    def any_succeeded(self):
        return any(outcome.success for outcome in self.outcomes)

    def save(self, path):
        write_wav(path, self.mixed, self.sample_rate)


def _config(base_freq, freq_spacing, sample_rate):
    return Config(
        base_freq=base_freq,
        freq_spacing=freq_spacing,
        order=SCENARIO_ORDER,
        baud_rate=SCENARIO_BAUD_RATE,
        sample_rate=sample_rate,
    )


def _run(name, links, sample_rate, gains=None):
    """links: (label, tx Config, rx Config, message) tuples."""
    signals = [Modem(tx).encode(message.encode('utf-8')) for _, tx, _, message in links]
    mixed = mix_signals(signals, gains)
    result = ScenarioResult(name=name, mixed=mixed, sample_rate=sample_rate)
    for label, _, rx, message in links:
        decoded = Modem(rx).decode(mixed)
        result.outcomes.append(Outcome(label, message.encode('utf-8'), decoded))
        logger.info("%s: %s decoded %r", name, label, decoded)
    return result


def same_frequency_collision(sample_rate=SCENARIO_SAMPLE_RATE):
    """Two stations on identical tones. Expect at least one to be lost."""
    config = _config(22000, 500, sample_rate)
    return _run("Same frequency collision", [
        ("Agent A", config, config, "Message from Agent A"),
        ("Agent B", config, config, "Message from Agent B"),
    ], sample_rate)


def overlapping_frequencies(sample_rate=SCENARIO_SAMPLE_RATE):
    """Partly shared tone tables, the second station 30% quieter."""
    config_a = _config(22000, 300, sample_rate)
    config_b = _config(22500, 300, sample_rate)
    return _run("Overlapping frequencies", [
        ("Agent A", config_a, config_a, "Agent A message"),
        ("Agent B", config_b, config_b, "Agent B message"),
    ], sample_rate, gains=[1.0, 0.7])


def separate_frequencies(sample_rate=SCENARIO_SAMPLE_RATE):
    """Bands 2 kHz apart. Both should decode."""
    config_a = _config(22000, 250, sample_rate)
    config_b = _config(24000, 250, sample_rate)
    return _run("Separate frequencies", [
        ("Agent A", config_a, config_a, "Clean message from A"),
        ("Agent B", config_b, config_b, "Clean message from B"),
    ], sample_rate)


def multi_channel_broadcast(sample_rate=SCENARIO_SAMPLE_RATE):
    """Three channels talking at once, each decoded from the same mix."""
    links = []
    for number, base_freq in enumerate((22000, 24000, 26000), start=1):
        config = _config(base_freq, 500, sample_rate)
        links.append((f"Channel {number}", config, config, f"Channel {number} broadcast"))
    return _run("Multi-channel broadcast", links, sample_rate)


def point_to_point_duplex(sample_rate=SCENARIO_SAMPLE_RATE):
    """A sends on 22 kHz and listens on 24 kHz; B does the reverse."""
    band_a = _config(22000, 500, sample_rate)
    band_b = _config(24000, 500, sample_rate)
    return _run("Point-to-point duplex", [
        ("B receives A", band_a, band_a, "A to B: Hello"),
        ("A receives B", band_b, band_b, "B to A: Hi there"),
    ], sample_rate)


SCENARIOS = {
    1: same_frequency_collision,
    2: overlapping_frequencies,
    3: separate_frequencies,
    4: multi_channel_broadcast,
    5: point_to_point_duplex,
}
