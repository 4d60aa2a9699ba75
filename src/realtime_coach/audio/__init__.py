"""Audio utilities for level analysis and local device access.

This module provides the frequency-domain analyser used for silence
detection and the microphone / playback wrappers used by the peer
connection.
"""

from .analyser import AudioLevelPump, FrequencyLevelAnalyser, frame_to_mono
from .devices import AudioCapture, AudioInput, Microphone, MicrophoneCapture, RemoteAudioSink

__all__ = [
    "AudioLevelPump",
    "FrequencyLevelAnalyser",
    "frame_to_mono",
    "AudioCapture",
    "AudioInput",
    "Microphone",
    "MicrophoneCapture",
    "RemoteAudioSink",
]
