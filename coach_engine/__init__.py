"""
Live Coaching Engine.

Streams microphone audio to a real-time speech-recognition service and turns
the incremental transcripts into live speech-quality signals (volume, clarity,
talking speed, confidence) and periodic coaching feedback.
"""

__version__ = "1.0.0"
