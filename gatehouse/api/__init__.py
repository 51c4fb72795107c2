"""API Layer — request pipeline, error funnel, and routes.

Invariants:
    - Routes registered explicitly in main.py (no auto-discovery)
    - All error responses come from error_handlers.handle()
"""
