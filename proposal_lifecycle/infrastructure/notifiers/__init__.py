from proposal_lifecycle.infrastructure.notifiers.event_recorder import RepositoryEventRecorder
from proposal_lifecycle.infrastructure.notifiers.http import HttpEmailNotifier
from proposal_lifecycle.infrastructure.notifiers.in_memory import InMemoryNotifier

__all__ = ["HttpEmailNotifier", "InMemoryNotifier", "RepositoryEventRecorder"]
