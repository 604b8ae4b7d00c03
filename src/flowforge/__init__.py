"""FlowForge workflow orchestration engine.

Provides:
- versioned process definitions with structural validation
- a sandboxed expression language for conditions and computed fields
- instance execution with approvals, connector actions and SLA escalation
- a CLI and a FastAPI REST adapter
"""

__version__ = "0.1.0"

from flowforge.engine.config import EngineConfig

__all__ = ["__version__", "EngineConfig"]
