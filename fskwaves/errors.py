# errors.py
#
# Exception types shared by the modem, the audio transport and the channel
# registry. Decode ambiguity is never reported here: a bad decode is just
# wrong bytes.


class FSKError(Exception):
    """Base class for every error raised by fskwaves."""


class ConfigurationError(FSKError):
    """Raised when a modem configuration cannot produce a usable waveform."""


class DeviceError(FSKError):
    """Raised when an audio device cannot be opened or started."""


class ChannelError(FSKError):
    """Raised on misuse of the channel registry (unknown or duplicate id)."""


class WavFormatError(FSKError):
    """Raised when a file is not a 16-bit mono PCM WAV container."""
