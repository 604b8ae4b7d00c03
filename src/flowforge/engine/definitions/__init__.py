"""Process definitions: models, structural validation and the authoring store."""

from flowforge.engine.definitions.models import (
    ActionConfig,
    ApprovalConfig,
    DecisionConfig,
    Definition,
    DefinitionDraft,
    DefinitionSettings,
    DefinitionStatus,
    Edge,
    EmailConfig,
    EndConfig,
    EscalationPolicy,
    Node,
    NodeType,
    RetryPolicy,
    SlaSettings,
    StartConfig,
    Trigger,
    Variable,
)
from flowforge.engine.definitions.store import DefinitionStore
from flowforge.engine.definitions.validation import validate_graph

__all__ = [
    "ActionConfig",
    "ApprovalConfig",
    "DecisionConfig",
    "Definition",
    "DefinitionDraft",
    "DefinitionSettings",
    "DefinitionStatus",
    "DefinitionStore",
    "Edge",
    "EmailConfig",
    "EndConfig",
    "EscalationPolicy",
    "Node",
    "NodeType",
    "RetryPolicy",
    "SlaSettings",
    "StartConfig",
    "Trigger",
    "Variable",
    "validate_graph",
]
