"""Workflow engine core.

Business logic only; adapters live in :mod:`flowforge.server` and
:mod:`flowforge.engine.main`.
"""
