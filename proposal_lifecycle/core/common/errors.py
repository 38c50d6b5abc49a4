class ProposalLifecycleError(Exception):
    pass


class ProposalNotFoundError(ProposalLifecycleError):
    pass


class ProposalValidationError(ProposalLifecycleError):
    pass


class ProposalConflictError(ProposalLifecycleError):
    """Stale optimistic-concurrency token; the caller must refetch and retry."""


class ProposalInvalidStateError(ProposalLifecycleError):
    """The requested operation is not permitted from the current status."""


class CollaboratorError(ProposalLifecycleError):
    """Notifier or event recorder failure. Never surfaced to the triggering caller."""
