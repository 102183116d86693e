"""Shared models, logging and error taxonomy for the VoiceDoc worker."""
