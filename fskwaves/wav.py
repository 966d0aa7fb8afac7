# wav.py
#
# 16-bit mono PCM WAV files for saving and replaying modem output.

import logging

import numpy as np
import soundfile as sf

from fskwaves.errors import WavFormatError

logger = logging.getLogger(__name__)

PCM_SCALE = 32767.0


def float_to_pcm16(samples):
    """Clamp to [-1, 1] and scale to int16, truncating toward zero."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * PCM_SCALE).astype(np.int16)


def pcm16_to_float(frames):
    return np.asarray(frames, dtype=np.int16).astype(np.float32) / np.float32(PCM_SCALE)


def write_wav(path, samples, sample_rate):
    """Write samples as a mono 16-bit little-endian PCM WAV file."""
    pcm = float_to_pcm16(samples)
    sf.write(str(path), pcm, int(sample_rate), subtype='PCM_16', format='WAV', endian='LITTLE')
    logger.info("Wrote %d samples at %d Hz to %s", len(pcm), sample_rate, path)


def read_wav(path):
    """Read a mono 16-bit WAV file. Returns (float32 samples, sample_rate)."""
    try:
        info = sf.info(str(path))
    except RuntimeError as e:
        raise WavFormatError(f"{path}: not a readable audio file ({e})") from e

    if info.format != 'WAV' or info.subtype != 'PCM_16':
        raise WavFormatError(f"{path}: expected 16-bit PCM WAV, got {info.format}/{info.subtype}")
    if info.channels != 1:
        raise WavFormatError(f"{path}: expected mono audio, got {info.channels} channels")

    data, sr = sf.read(str(path), dtype='int16', always_2d=True)
    logger.info("Read %d samples at %d Hz from %s", len(data), sr, path)
    return pcm16_to_float(data[:, 0]), sr
