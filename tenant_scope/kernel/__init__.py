"""Kernel utilities shared across modules.

Rules:
- Kernel code must not import from the db or audit packages.
- Kernel utilities should stay small and stable; avoid business logic here.
"""
