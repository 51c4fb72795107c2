"""Gatehouse — HTTP service skeleton with an ordered request lifecycle layer.

Invariants:
    - Package root contains no executable code (import side-effects prohibited)
"""

__version__ = "1.0.0"
