"""Route Modules — one file per resource/concern.

Invariants:
    - Each module defines its own APIRouter with prefix and tags
    - Routes raise ErrorModel (or let exceptions propagate); they never build
      error responses themselves

Design Decisions:
    - Explicit registration in main.py over auto-discovery
"""
