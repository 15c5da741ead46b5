"""
WaveTalk - Push-to-talk voice dictation for Linux

Hold the hotkey to record, release to transcribe.
The transcript is sent to a remote speech-to-text API (Deepgram or Groq)
and typed into whichever window has focus.
"""

__version__ = "0.2.0"
__app_name__ = "wavetalk"
