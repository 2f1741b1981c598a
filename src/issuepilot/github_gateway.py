from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from issuepilot.models import ChangeRequest, FeedbackEntry, WorkItem
from issuepilot.observability import log_event
from issuepilot.prompts import has_action_marker
from issuepilot.shell import CommandError, run


LOGGER = logging.getLogger("issuepilot.github_gateway")
_ISSUES_PER_POLL = 10
_PULLS_PER_POLL = 30
_COMMENTS_PER_PAGE = 100


class GitHubPollingError(RuntimeError):
    """A GitHub read failed; the poller skips this cycle and retries on the next one."""


@dataclass(frozen=True)
class GitHubGateway:
    """Thin client over ``gh api`` for the calls the orchestrator makes.

    Reads go through ``--include`` so the response status and ETag are visible; a 304 reply
    is served from the per-path cache. Writes pipe their JSON payload through stdin.
    """

    owner: str
    name: str
    branch_prefix: str = "auto/"
    # path -> (etag, decoded payload)
    _get_cache: dict[str, tuple[str, object]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_open_issues_with_label(self, label: str) -> list[WorkItem]:
        query = urlencode({"state": "open", "labels": label, "per_page": str(_ISSUES_PER_POLL)})
        payload = self._get_json(f"{self._repo_path}/issues?{query}")
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list for issues")

        items = [
            _work_item(item_obj)
            for item_obj in _object_dicts(payload)
            # The issues endpoint also lists pull requests.
            if "pull_request" not in item_obj
        ]
        log_event(LOGGER, "github_read", endpoint="issues", label=label, count=len(items))
        return items

    def list_feedback_since(self, since: str) -> list[FeedbackEntry]:
        """Human feedback on open orchestrator pull requests created at or after ``since``.

        Both inline review comments and conversation-tab comments are returned, normalized
        into ``FeedbackEntry`` and sorted by creation time. Bot comments and comments
        carrying the orchestrator action marker are dropped, so the orchestrator never reacts
        to its own acknowledgements.
        """
        entries: list[FeedbackEntry] = []
        for pr_number in self._open_orchestrator_pull_requests():
            entries.extend(self._review_comments(pr_number, since=since))
            entries.extend(self._conversation_comments(pr_number, since=since))
        entries.sort(key=lambda entry: (entry.created_at, entry.comment_id))
        log_event(LOGGER, "github_read", endpoint="feedback", since=since, count=len(entries))
        return entries

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> ChangeRequest:
        request = {"title": title, "head": head, "base": base, "body": body}
        try:
            created = _as_object_dict(self._send_json("POST", f"{self._repo_path}/pulls", request))
            if created is None:
                raise RuntimeError("Unexpected GitHub response: expected object for PR")
            pr = ChangeRequest(
                number=_as_int(created.get("number"), field="number"),
                html_url=_as_string(created.get("html_url")),
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=pr.number,
            pr_url=pr.html_url,
            base=base,
            head=head,
        )
        return pr

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"{self._repo_path}/issues/{issue_number}/comments"
        try:
            self._send_json("POST", path, {"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def add_label(self, issue_number: int, label: str) -> None:
        self._send_json(
            "POST", f"{self._repo_path}/issues/{issue_number}/labels", {"labels": [label]}
        )
        log_event(LOGGER, "github_label_added", issue_number=issue_number, label=label)

    def remove_label(self, issue_number: int, label: str) -> None:
        """Remove ``label``; a label that is not on the issue is not an error."""
        path = f"{self._repo_path}/issues/{issue_number}/labels/{quote(label, safe='')}"
        try:
            self._send_json("DELETE", path)
        except CommandError as exc:
            if "HTTP 404" not in str(exc):
                raise
            log_event(LOGGER, "github_label_absent", issue_number=issue_number, label=label)
            return
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)

    def get_pull_request_branch(self, pr_number: int) -> str:
        pull = _as_object_dict(self._get_json(f"{self._repo_path}/pulls/{pr_number}"))
        if pull is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")
        ref = _head_ref(pull)
        if ref is None:
            raise RuntimeError(f"Pull request #{pr_number} has no head branch")
        return ref

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.name}"

    def _open_orchestrator_pull_requests(self) -> list[int]:
        query = urlencode({"state": "open", "per_page": str(_PULLS_PER_POLL)})
        payload = self._get_json(f"{self._repo_path}/pulls?{query}")
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list for pull requests")
        return [
            _as_int(pull.get("number"), field="number")
            for pull in _object_dicts(payload)
            if (_head_ref(pull) or "").startswith(self.branch_prefix)
        ]

    def _review_comments(self, pr_number: int, *, since: str) -> list[FeedbackEntry]:
        path = f"{self._repo_path}/pulls/{pr_number}/comments?{_since_query(since)}"
        return [
            FeedbackEntry(
                kind="review_comment",
                comment_id=_as_int(comment.get("id"), field="id"),
                request_number=pr_number,
                body=_as_string(comment.get("body")),
                author=_comment_author(comment),
                created_at=_as_string(comment.get("created_at")),
                path=_as_optional_str(comment.get("path")),
                line=_as_optional_int(comment.get("line")),
            )
            for comment in self._human_comments_since(path, since=since)
        ]

    def _conversation_comments(self, pr_number: int, *, since: str) -> list[FeedbackEntry]:
        path = f"{self._repo_path}/issues/{pr_number}/comments?{_since_query(since)}"
        return [
            FeedbackEntry(
                kind="conversation_comment",
                comment_id=_as_int(comment.get("id"), field="id"),
                request_number=pr_number,
                body=_as_string(comment.get("body")),
                author=_comment_author(comment),
                created_at=_as_string(comment.get("created_at")),
            )
            for comment in self._human_comments_since(path, since=since)
        ]

    def _human_comments_since(self, path: str, *, since: str) -> list[dict[str, object]]:
        payload = self._get_json(path)
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list of comments")
        kept: list[dict[str, object]] = []
        for comment in _object_dicts(payload):
            if _is_bot_comment(comment) or has_action_marker(_as_string(comment.get("body"))):
                continue
            # `since` filters on updated_at; an old comment edited later is not new feedback.
            created_at = _as_string(comment.get("created_at"))
            if created_at and created_at < since:
                continue
            kept.append(comment)
        return kept

    def _get_json(self, path: str) -> object:
        cached = self._get_cache.get(path)
        argv = ["gh", "api", "--method", "GET"]
        if cached is not None:
            argv.extend(["--header", f"If-None-Match: {cached[0]}"])
        argv.extend(["--include", path])

        raw = run(argv, check=False)
        try:
            return self._decode_get_response(path, raw, cached)
        except Exception as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(f"GitHub GET {path} failed: {exc}") from exc

    def _decode_get_response(
        self, path: str, raw: str, cached: tuple[str, object] | None
    ) -> object:
        status, headers, body = _parse_http_response(raw)
        if status == 304:
            if cached is None:
                raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
            return cached[1]
        if not 200 <= status < 300:
            raise RuntimeError(
                f"GitHub API request failed with status {status}: {body.strip() or '<empty>'}"
            )
        decoded = json.loads(body)
        etag = headers.get("etag")
        if etag:
            self._get_cache[path] = (etag, decoded)
        return decoded

    def _send_json(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        argv = ["gh", "api", "--method", method, path]
        stdin_text = None
        if payload is not None:
            argv.extend(["--input", "-"])
            stdin_text = json.dumps(payload)
        raw = run(argv, input_text=stdin_text)
        return json.loads(raw) if raw.strip() else None


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    """Split ``gh api --include`` output into status, lower-cased headers and body.

    Interim responses (``100 Continue``) precede the final one, so the last status line wins.
    """
    lines = raw.replace("\r\n", "\n").split("\n")
    status_indexes = [index for index, line in enumerate(lines) if line.startswith("HTTP/")]
    if not status_indexes:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line, *rest = lines[status_indexes[-1] :]
    parts = status_line.split(" ", 2)
    if len(parts) < 2 or not parts[1].isdigit():
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")
    status = int(parts[1])

    headers: dict[str, str] = {}
    for offset, line in enumerate(rest):
        if not line:
            return status, headers, "\n".join(rest[offset + 1 :])
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return status, headers, ""


def _work_item(item_obj: dict[str, object]) -> WorkItem:
    labels: list[str] = []
    raw_labels = item_obj.get("labels")
    for label in raw_labels if isinstance(raw_labels, list) else []:
        label_obj = _as_object_dict(label)
        name = label_obj.get("name") if label_obj is not None else label
        if isinstance(name, str) and name:
            labels.append(name)
    return WorkItem(
        number=_as_int(item_obj.get("number"), field="number"),
        title=_as_string(item_obj.get("title")),
        body=_as_string(item_obj.get("body")),
        html_url=_as_string(item_obj.get("html_url")),
        labels=tuple(labels),
    )


def _head_ref(pull: dict[str, object]) -> str | None:
    head = _as_object_dict(pull.get("head"))
    ref = head.get("ref") if head is not None else None
    return ref if isinstance(ref, str) and ref else None


def _since_query(since: str) -> str:
    return urlencode({"since": since, "per_page": _COMMENTS_PER_PAGE})


def _is_bot_comment(comment: dict[str, object]) -> bool:
    user = _as_object_dict(comment.get("user"))
    if user is None:
        return False
    login = user.get("login")
    return user.get("type") == "Bot" or (
        isinstance(login, str) and login.strip().lower().endswith("[bot]")
    )


def _comment_author(comment: dict[str, object]) -> str:
    user = _as_object_dict(comment.get("user"))
    login = _as_string(user.get("login") if user is not None else None).strip()
    return login or "unknown"


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.strip().replace("\n", "\\n")
    if not compact:
        return "<empty>"
    return compact if len(compact) <= limit else f"{compact[:limit]}..."


def _object_dicts(items: list[object]) -> list[dict[str, object]]:
    return [obj for obj in map(_as_object_dict, items) if obj is not None]


def _as_object_dict(value: object) -> dict[str, object] | None:
    if isinstance(value, dict) and all(isinstance(key, str) for key in value):
        return cast(dict[str, object], value)
    return None


def _as_string(value: object) -> str:
    return "" if value is None else str(value)


def _as_optional_str(value: object) -> str | None:
    return None if value is None or value == "" else str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise RuntimeError(f"Unexpected GitHub response value for {field}: {value!r}")


def _as_optional_int(value: object) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None
