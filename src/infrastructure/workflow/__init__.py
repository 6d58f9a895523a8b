from src.infrastructure.workflow.in_memory import InMemoryWorkflowRepository
from src.infrastructure.workflow.postgres import PostgresWorkflowRepository

__all__ = ["InMemoryWorkflowRepository", "PostgresWorkflowRepository"]
