"""Infrastructure Layer — storage connection and the logging sink.

Invariants:
    - Infrastructure never imports from api/ or lifecycle
    - Storage failures surface as UpstreamError
"""
