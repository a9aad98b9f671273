from .engine import AudioCaptureEngine, AudioInputBackend, AudioSession, SoundDeviceBackend
from .level import LevelMonitor, byte_frequency_data, compute_level

__all__ = [
    "AudioCaptureEngine",
    "AudioInputBackend",
    "AudioSession",
    "SoundDeviceBackend",
    "LevelMonitor",
    "byte_frequency_data",
    "compute_level",
]
