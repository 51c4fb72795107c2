"""Core — error taxonomy and per-request context. No I/O, no framework state."""
