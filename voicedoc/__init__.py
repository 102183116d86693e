"""
VoiceDoc Worker

Database-backed queue worker that drives inbound voice messages through
audio storage, transcription, analysis, document creation and notification.
"""

__version__ = "1.6.3"
