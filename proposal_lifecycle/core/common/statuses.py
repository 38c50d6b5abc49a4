from typing import Literal

ProposalStatus = Literal[
    "draft",
    "pending_approval",
    "sent",
    "viewed",
    "signed",
    "rejected",
    "expired",
]

TERMINAL_STATUSES: frozenset[str] = frozenset({"signed", "rejected", "expired"})

# Recorded on the pending_approval -> sent event; never stored as a status.
APPROVED_MARKER = "approved"


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
