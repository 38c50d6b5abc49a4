from proposal_lifecycle.infrastructure.workflow_config.in_memory import (
    InMemoryWorkflowConfigRepository,
)
from proposal_lifecycle.infrastructure.workflow_config.postgres import (
    PostgresWorkflowConfigRepository,
)

__all__ = [
    "InMemoryWorkflowConfigRepository",
    "PostgresWorkflowConfigRepository",
]
