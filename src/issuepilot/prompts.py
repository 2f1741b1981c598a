from __future__ import annotations

import re

from issuepilot.models import DecisionPoint, FeedbackEntry, WorkItem


DECISION_POINT_PATTERN = re.compile(r"\[DECISION_POINT\]\s*(.+?)\s*\|\s*(.+?)\s*\|\s*(.+)")
ACTION_MARKER_PATTERN = re.compile(r"<!--\s*issuepilot-action:([a-z0-9-]+)\s*-->")


def build_implement_prompt(*, item: WorkItem, task_list_path: str, task_list: str | None) -> str:
    if task_list is not None and task_list.strip():
        task_list_section = f"```\n{task_list.strip()}\n```"
    else:
        task_list_section = f"(no task list found at {task_list_path})"
    return f"""
You are an agent that implements code changes described by a GitHub issue.

Issue to implement:
- Number: #{item.number}
- Title: {item.title}

Issue body:
{item.body}

Reference:
The repository task list ({task_list_path}) currently reads:
{task_list_section}

Instructions:
1. Analyse the issue and make the changes it asks for.
2. If CLAUDE.md exists, follow its instructions.
3. Add or update tests where the change needs them.
4. Commit your changes with git when done. Do not push.
5. Use a conventional commit prefix in the commit message.

Decision points:
Whenever you choose between alternatives, print one line to stdout in this exact form:
[DECISION_POINT] <what you had to decide> | <option chosen> | <option rejected>
""".strip()


def build_review_prompt(*, entries: tuple[FeedbackEntry, ...]) -> str:
    sections = "\n\n---\n\n".join(_render_feedback_entry(entry) for entry in entries)
    return f"""
You are an agent that revises a pull request according to reviewer feedback.

Reviewer feedback:

{sections}

Instructions:
1. Understand each comment and make the change it asks for.
2. If CLAUDE.md exists, follow its instructions.
3. Commit your changes with git when done, using a `fix:` prefix. Do not push.
4. If a reviewer's intent is unclear, implement the most reasonable interpretation.
""".strip()


def _render_feedback_entry(entry: FeedbackEntry) -> str:
    header = f"### Comment from @{entry.author}"
    if entry.path:
        location = entry.path if entry.line is None else f"{entry.path}:{entry.line}"
        header += f"\n**File:** {location}"
    return f"{header}\n{entry.body}"


def extract_decision_points(output: str) -> tuple[DecisionPoint, ...]:
    return tuple(
        DecisionPoint(
            description=match.group(1).strip(),
            chosen=match.group(2).strip(),
            rejected=match.group(3).strip(),
        )
        for match in DECISION_POINT_PATTERN.finditer(output)
    )


def render_pull_request_title(item: WorkItem) -> str:
    return f"feat: #{item.number} {item.title}"


def render_pull_request_body(
    *, item: WorkItem, decision_points: tuple[DecisionPoint, ...], session_id: str | None
) -> str:
    if decision_points:
        decisions = "\n\n".join(
            f"### {index}. {point.description}\n"
            f"- **Chosen:** {point.chosen}\n"
            f"- **Rejected:** {point.rejected}"
            for index, point in enumerate(decision_points, start=1)
        )
    else:
        decisions = "None"
    return f"""## Summary

Closes #{item.number}

Automated implementation of "{item.title}".

## Decision points

{decisions}

## Metadata

- Implemented automatically by issuepilot
- Session ID: `{session_id or "N/A"}`

---
> Leave review comments on this pull request and they will be addressed automatically."""


def append_action_marker(*, body: str, action: str) -> str:
    """Tag a comment the orchestrator posts so the feedback scan can skip it."""
    marker = f"<!-- issuepilot-action:{action} -->"
    stripped = body.strip()
    if marker in stripped:
        return stripped
    return f"{stripped}\n\n{marker}" if stripped else marker


def has_action_marker(text: str) -> bool:
    return ACTION_MARKER_PATTERN.search(text) is not None


def render_implement_started_comment() -> str:
    return append_action_marker(
        body="Automated implementation started. A pull request will be opened when it is done.",
        action="implement-started",
    )


def render_implement_completed_comment(*, pr_url: str, pr_number: int, session_id: str | None) -> str:
    return append_action_marker(
        body=f"Opened pull request #{pr_number}: {pr_url}\nSession ID: `{session_id or 'N/A'}`",
        action="implement-completed",
    )


def render_review_started_comment(entry_count: int) -> str:
    noun = "comment" if entry_count == 1 else "comments"
    return append_action_marker(
        body=f"Addressing {entry_count} review {noun}.", action="review-started"
    )


def render_review_completed_comment() -> str:
    return append_action_marker(
        body="Pushed changes addressing the review feedback. Please take another look.",
        action="review-completed",
    )


def render_failure_comment(*, action: str, error: str) -> str:
    return append_action_marker(body=f"{action} failed.\n\n```\n{error}\n```", action="failed")
