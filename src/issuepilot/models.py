from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


TaskKind = Literal["implement", "review"]
TaskStatus = Literal["pending", "in-progress", "completed", "failed"]
FeedbackKind = Literal["review_comment", "conversation_comment"]


@dataclass(frozen=True)
class WorkItem:
    number: int
    title: str
    body: str
    html_url: str
    labels: tuple[str, ...]


@dataclass(frozen=True)
class ChangeRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class FeedbackEntry:
    """One piece of human feedback on an open change request.

    Review comments are anchored to a file (and usually a line); conversation comments
    are not. ``kind`` tells the two apart so nothing downstream has to check for fields.
    """

    kind: FeedbackKind
    comment_id: int
    request_number: int
    body: str
    author: str
    created_at: str
    path: str | None = None
    line: int | None = None


@dataclass(frozen=True)
class FeedbackBatch:
    request_number: int
    entries: tuple[FeedbackEntry, ...]

    def __post_init__(self) -> None:
        if not self.entries:
            raise ValueError("FeedbackBatch must contain at least one entry")
        for entry in self.entries:
            if entry.request_number != self.request_number:
                raise ValueError(
                    f"Feedback entry {entry.comment_id} belongs to #{entry.request_number}, "
                    f"not #{self.request_number}"
                )


@dataclass(frozen=True)
class DecisionPoint:
    description: str
    chosen: str
    rejected: str


@dataclass(frozen=True)
class AgentResult:
    exit_code: int
    stdout: str
    stderr: str
    session_id: str | None
