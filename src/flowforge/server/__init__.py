"""FastAPI server adapter for FlowForge.

Design intent:
- Keep business logic in `flowforge.engine.*`
- Keep server-specific concerns (routing, CORS, the SLA sweep thread) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from flowforge.server.app import create_app
