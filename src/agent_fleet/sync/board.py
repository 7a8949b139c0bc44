"""GitHub board adapter: repository issues, optionally mirrored on a project board.

In ``issues`` mode status lives in issue labels and open/closed state. In
``kanban`` mode items are listed from a GitHub Project (v2) and the
project's Status field is kept in step with the issue labels.

Shared ownership state is stored in a structured issue comment::

    <!-- agent-fleet-state
    {"ownerId": "...", "status": "working", ...}
    -->
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from agent_fleet.config import SyncConfig, env_str
from agent_fleet.core.models import TaskStatus, normalize_status
from agent_fleet.monitoring.logging import get_logger
from agent_fleet.sync.backoff import BackoffState
from agent_fleet.sync.errors import GhCommandError, RateLimitedError
from agent_fleet.sync.gh import GhClient
from agent_fleet.sync.ownership import get_shared_owner_id, normalize_shared_state
from agent_fleet.sync.payloads import (
    InvalidShape,
    coerce_project_payload,
    extract_connection_nodes,
)

logger = get_logger(__name__)

STATE_MARKER = "<!-- agent-fleet-state"
ISSUE_FIELDS = "number,title,body,state,url,labels,assignees,comments"

# Labels that carry a task status in issues mode
STATUS_LABELS: Dict[str, TaskStatus] = {
    "draft": TaskStatus.DRAFT,
    "inprogress": TaskStatus.IN_PROGRESS,
    "in-progress": TaskStatus.IN_PROGRESS,
    "in_progress": TaskStatus.IN_PROGRESS,
    "inreview": TaskStatus.IN_REVIEW,
    "in-review": TaskStatus.IN_REVIEW,
    "in_review": TaskStatus.IN_REVIEW,
    "blocked": TaskStatus.BLOCKED,
}

STATUS_LABEL_FOR: Dict[TaskStatus, str] = {
    TaskStatus.DRAFT: "draft",
    TaskStatus.IN_PROGRESS: "inprogress",
    TaskStatus.IN_REVIEW: "inreview",
    TaskStatus.BLOCKED: "blocked",
}

CLAIM_LABELS: Dict[str, str] = {
    "claimed": "agent-fleet:claimed",
    "working": "agent-fleet:working",
    "stale": "agent-fleet:stale",
}

LABEL_COLORS = {
    "inprogress": "2563eb",
    "inreview": "f59e0b",
    "blocked": "dc2626",
}

_ISSUE_URL = re.compile(r"/issues/(\d+)\s*$")

PROJECT_ITEMS_QUERY = """
query($id: ID!, $first: Int!) {
  node(id: $id) {
    ... on ProjectV2 {
      items(first: $first) {
        nodes {
          id
          fieldValueByName(name: "Status") {
            ... on ProjectV2ItemFieldSingleSelectValue { name }
          }
          content {
            ... on Issue {
              number title body state url
              repository { nameWithOwner }
              labels(first: 50) { nodes { name } }
            }
          }
        }
      }
    }
  }
}
"""


def project_status_names() -> Dict[TaskStatus, str]:
    """Project Status option per task status, overridable via ``GITHUB_PROJECT_STATUS_*``."""
    return {
        TaskStatus.TODO: env_str("GITHUB_PROJECT_STATUS_TODO") or "Todo",
        TaskStatus.IN_PROGRESS: env_str("GITHUB_PROJECT_STATUS_INPROGRESS") or "In Progress",
        TaskStatus.IN_REVIEW: env_str("GITHUB_PROJECT_STATUS_INREVIEW") or "In Review",
        TaskStatus.DONE: env_str("GITHUB_PROJECT_STATUS_DONE") or "Done",
        TaskStatus.CANCELLED: env_str("GITHUB_PROJECT_STATUS_CANCELLED") or "Cancelled",
        TaskStatus.BLOCKED: env_str("GITHUB_PROJECT_STATUS_BLOCKED") or "Blocked",
    }


def normalize_project_status(name: Optional[str]) -> Optional[TaskStatus]:
    if not name:
        return None
    wanted = str(name).strip().lower()
    for status, option in project_status_names().items():
        if option.lower() == wanted:
            return status
    return normalize_status(wanted)


def status_from_labels(labels: Sequence[str]) -> Optional[TaskStatus]:
    for label in labels:
        status = STATUS_LABELS.get(label.strip().lower())
        if status is not None:
            return status
    return None


def _label_names(raw: Any) -> List[str]:
    if isinstance(raw, Mapping):
        raw = extract_connection_nodes(raw) or []
    names = []
    for label in raw or []:
        name = label.get("name") if isinstance(label, Mapping) else label
        if name:
            names.append(str(name))
    return names


def parse_state_comment(body: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode the JSON block of a shared-state comment, or None."""
    if not body or STATE_MARKER not in body:
        return None
    start = body.index(STATE_MARKER) + len(STATE_MARKER)
    end = body.find("-->", start)
    if end < 0:
        return None
    try:
        data = json.loads(body[start:end].strip())
    except ValueError:
        return None
    return normalize_shared_state(data)


def latest_shared_state(comments: Any) -> Optional[Dict[str, Any]]:
    if isinstance(comments, Mapping):
        comments = extract_connection_nodes(comments) or []
    if not isinstance(comments, list):
        return None
    for comment in reversed(comments):
        if isinstance(comment, Mapping):
            state = parse_state_comment(comment.get("body"))
            if state:
                return state
    return None


def render_state_comment(state: Mapping[str, Any]) -> str:
    owner = get_shared_owner_id(state) or "unknown"
    verb = {"working": "working on", "claimed": "claiming", "stale": "stale on"}.get(
        str(state.get("status") or ""), "tracking"
    )
    heartbeat = state.get("heartbeat") or "n/a"
    return (
        f"{STATE_MARKER}\n{json.dumps(dict(state), indent=2, sort_keys=True)}\n-->\n"
        f"**agent-fleet**: `{owner}` is {verb} this task.\n"
        f"*Last heartbeat: {heartbeat}*"
    )


@dataclass
class RemoteTask:
    """One task as seen on the board."""

    external_id: str
    title: str
    status: TaskStatus
    description: str = ""
    state: str = "open"
    url: Optional[str] = None
    labels: Tuple[str, ...] = ()
    repository: Optional[str] = None
    project_item_id: Optional[str] = None
    shared_state: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def owner(self) -> Optional[str]:
        return get_shared_owner_id(self.shared_state)

    def store_meta(self) -> Dict[str, Any]:
        meta = dict(self.meta)
        meta.update({"url": self.url, "labels": list(self.labels), "state": self.state})
        if self.project_item_id:
            meta["projectItemId"] = self.project_item_id
        if self.shared_state:
            meta["sharedState"] = dict(self.shared_state)
        return meta


class GitHubBoard:
    """Task board backed by ``gh``."""

    def __init__(
        self,
        client: GhClient,
        config: Optional[SyncConfig] = None,
        *,
        mode: str = "issues",
        project: Optional[str] = None,
    ):
        self.client = client
        self.config = config or client.config
        if not self.config.repository:
            raise ValueError("GitHubBoard requires a repository ('owner/repo')")
        self.mode = mode
        self.project = project
        self._ensured_labels: Set[str] = set()
        self._project_fields: Optional[Dict[str, Any]] = None
        self._project_node_id: Optional[str] = None

    @property
    def backoff(self) -> BackoffState:
        return self.client.backoff

    @property
    def repository(self) -> str:
        return str(self.config.repository)

    @property
    def kanban(self) -> bool:
        return self.mode == "kanban" and bool(self.project)

    def _owners(self) -> List[Optional[str]]:
        return [self.config.project_owner, self.config.owner]

    def _is_task_scoped(self, labels: Sequence[str]) -> bool:
        if not self.config.enforce_task_label:
            return True
        wanted = (self.config.task_label or "").lower()
        return wanted in {label.lower() for label in labels}

    # -------------------------------------------------------------------------
    # Normalization
    # -------------------------------------------------------------------------

    def _from_issue(self, issue: Mapping[str, Any]) -> RemoteTask:
        labels = _label_names(issue.get("labels"))
        label_set = {label.lower() for label in labels}
        state = str(issue.get("state") or "open").lower()
        if state == "closed":
            status = TaskStatus.CANCELLED if label_set & {"cancelled", "canceled"} else TaskStatus.DONE
        else:
            status = status_from_labels(labels) or TaskStatus.TODO
        if "draft" in label_set:
            status = TaskStatus.DRAFT
        return RemoteTask(
            external_id=str(issue.get("number")),
            title=str(issue.get("title") or ""),
            description=str(issue.get("body") or ""),
            status=status,
            state=state,
            url=issue.get("url"),
            labels=tuple(labels),
            repository=self.repository,
            shared_state=latest_shared_state(issue.get("comments")),
        )

    def _from_project_item(self, item: Mapping[str, Any]) -> Optional[RemoteTask]:
        content = item.get("content")
        if not isinstance(content, Mapping) or content.get("number") is None:
            return None
        repository = content.get("repository")
        if isinstance(repository, Mapping):
            repository = repository.get("nameWithOwner")
        issue = dict(content)
        issue["labels"] = item.get("labels") or content.get("labels")
        task = self._from_issue(issue)
        task.repository = str(repository) if repository else None
        task.project_item_id = item.get("id")

        status_name = item.get("status")
        if status_name is None and isinstance(item.get("fieldValueByName"), Mapping):
            status_name = item["fieldValueByName"].get("name")
        project_status = normalize_project_status(status_name)
        if project_status is not None and task.status not in (TaskStatus.DRAFT, TaskStatus.BLOCKED):
            task.status = project_status
        task.meta["projectStatus"] = status_name
        task.meta["projectNumber"] = self.project
        return task

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def list_tasks(self) -> List[RemoteTask]:
        """Every task on the board. Unusable payloads yield an empty list."""
        if self.kanban:
            tasks = await self._list_project_tasks()
        else:
            tasks = await self._list_issue_tasks()
        return [task for task in tasks if self._is_task_scoped(task.labels)]

    async def _list_issue_tasks(self) -> List[RemoteTask]:
        args = [
            "issue", "list",
            "--repo", self.repository,
            "--state", "all",
            "--json", ISSUE_FIELDS,
            "--limit", str(self.config.issues_list_limit),
        ]
        if self.config.enforce_task_label and self.config.task_label:
            args += ["--label", self.config.task_label]
        payload = await self.client.run(args)
        coerced = coerce_project_payload(payload)
        if isinstance(coerced, InvalidShape):
            self._warn_invalid("issues", self.repository, coerced.reason)
            return []
        return [self._from_issue(issue) for issue in coerced.items if isinstance(issue, Mapping)]

    async def _list_project_tasks(self) -> List[RemoteTask]:
        project = str(self.project)
        if project.isdigit():
            key = f"project-item-list:{project}"

            def build_args(owner: Optional[str]) -> List[str]:
                args = [
                    "project", "item-list", project,
                    "--format", "json",
                    "--limit", str(self.config.issues_list_limit),
                ]
                return args + ["--owner", owner] if owner else args

            payload = await self.client.run_project_command(key, build_args, self._owners())
        else:
            key = f"project-items-graphql:{project}"
            payload = await self.client.run(
                [
                    "api", "graphql",
                    "-f", f"query={PROJECT_ITEMS_QUERY}",
                    "-f", f"id={project}",
                    "-F", f"first={min(self.config.issues_list_limit, 100)}",
                ]
            )
            payload = self._graphql_items(payload)

        coerced = coerce_project_payload(payload)
        if isinstance(coerced, InvalidShape):
            self._warn_invalid("project", project, coerced.reason)
            self.backoff.record_command_failure(
                key,
                backoff_seconds=self.config.command_backoff_seconds,
                error=coerced.reason,
                reason="invalid_payload",
            )
            return []

        tasks = []
        for item in coerced.items:
            if not isinstance(item, Mapping):
                continue
            task = self._from_project_item(item)
            if task is not None:
                tasks.append(task)
        await self._attach_shared_state(tasks)
        return tasks

    @staticmethod
    def _graphql_items(payload: Any) -> Any:
        if isinstance(payload, Mapping):
            node = (payload.get("data") or {}).get("node")
            if isinstance(node, Mapping) and isinstance(node.get("items"), Mapping):
                return node["items"]
        return payload

    async def _attach_shared_state(self, tasks: List[RemoteTask]) -> None:
        for task in tasks:
            if task.repository and task.repository.lower() != self.repository.lower():
                continue
            try:
                task.shared_state = await self.read_shared_state(task.external_id)
            except RateLimitedError:
                raise
            except GhCommandError as e:
                logger.warning("board.shared_state.read_failed", issue=task.external_id, error=str(e))

    def _warn_invalid(self, role: str, name: str, reason: str) -> None:
        if self.backoff.should_warn(role, name, reason):
            logger.warning("board.payload.invalid_shape", role=role, name=name, shape=reason)

    # -------------------------------------------------------------------------
    # Single issue operations
    # -------------------------------------------------------------------------

    async def get_task(self, external_id: str) -> RemoteTask:
        """Fetch one task. Raises GhCommandError (not-found shaped) if it is gone."""
        issue = await self.client.run(
            ["issue", "view", str(external_id), "--repo", self.repository, "--json", ISSUE_FIELDS]
        )
        if not isinstance(issue, Mapping):
            raise GhCommandError(f"unexpected issue payload for #{external_id}")
        return self._from_issue(issue)

    async def create_task(
        self,
        title: str,
        *,
        description: str = "",
        status: TaskStatus = TaskStatus.TODO,
        labels: Sequence[str] = (),
    ) -> RemoteTask:
        labels = list(labels)
        if self.config.task_label and self.config.task_label not in labels:
            labels.append(self.config.task_label)
        status_label = STATUS_LABEL_FOR.get(normalize_status(status))
        if status_label:
            labels.append(status_label)
        for label in labels:
            await self._ensure_label(label)

        args = ["issue", "create", "--repo", self.repository, "--title", title, "--body", description or ""]
        for label in labels:
            args += ["--label", label]
        url = await self.client.run(args, parse_json=False)
        match = _ISSUE_URL.search(url or "")
        if not match:
            raise GhCommandError(f"could not parse created issue URL: {url!r}", args=args)
        number = match.group(1)
        logger.info("board.task.created", issue=number, title=title[:60])

        if self.kanban:
            await self._add_to_project(url.strip())
        if normalize_status(status) in (TaskStatus.DONE, TaskStatus.CANCELLED):
            await self.update_task_status(number, status)

        return RemoteTask(
            external_id=number,
            title=title,
            description=description,
            status=normalize_status(status),
            url=url.strip(),
            labels=tuple(labels),
            repository=self.repository,
        )

    async def update_task_status(self, external_id: str, status: TaskStatus) -> None:
        """Move a task to ``status`` via labels, open/closed state and project Status."""
        status = normalize_status(status)
        current = await self.get_task(external_id)
        number = str(external_id)
        current_labels = {label.lower(): label for label in current.labels}

        wanted = STATUS_LABEL_FOR.get(status)
        edit = ["issue", "edit", number, "--repo", self.repository]
        for lowered, original in current_labels.items():
            if lowered in STATUS_LABELS and lowered != wanted:
                edit += ["--remove-label", original]
        if wanted and wanted not in current_labels:
            await self._ensure_label(wanted)
            edit += ["--add-label", wanted]
        if len(edit) > 5:
            await self.client.run(edit, parse_json=False)

        if status == TaskStatus.DONE and current.state != "closed":
            await self.client.run(["issue", "close", number, "--repo", self.repository], parse_json=False)
        elif status == TaskStatus.CANCELLED and current.state != "closed":
            await self.client.run(
                ["issue", "close", number, "--repo", self.repository, "--reason", "not planned"],
                parse_json=False,
            )
        elif status not in (TaskStatus.DONE, TaskStatus.CANCELLED) and current.state == "closed":
            await self.client.run(["issue", "reopen", number, "--repo", self.repository], parse_json=False)

        if self.kanban:
            await self._sync_project_status(current, status)
        logger.info("board.task.status_updated", issue=number, status=status.value)

    async def add_comment(self, external_id: str, body: str) -> None:
        await self.client.run(
            ["issue", "comment", str(external_id), "--repo", self.repository, "--body", body],
            parse_json=False,
        )

    async def _ensure_label(self, label: str) -> None:
        if not label or label in self._ensured_labels:
            return
        try:
            await self.client.run(
                [
                    "label", "create", label,
                    "--repo", self.repository,
                    "--color", LABEL_COLORS.get(label.lower(), "94a3b8"),
                    "--description", f"agent-fleet: {label}",
                ],
                parse_json=False,
            )
        except RateLimitedError:
            raise
        except GhCommandError as e:
            if "already exists" not in str(e).lower():
                logger.warning("board.label.ensure_failed", label=label, error=str(e))
                return
        self._ensured_labels.add(label)

    # -------------------------------------------------------------------------
    # Shared state
    # -------------------------------------------------------------------------

    async def _issue_comments(self, external_id: str) -> List[Dict[str, Any]]:
        payload = await self.client.run(
            ["api", f"repos/{self.repository}/issues/{external_id}/comments?per_page=100"]
        )
        return [c for c in coerce_project_payload(payload).items if isinstance(c, dict)]

    async def read_shared_state(self, external_id: str) -> Optional[Dict[str, Any]]:
        """Latest shared-state blob on the issue, or None."""
        return latest_shared_state(await self._issue_comments(external_id))

    async def persist_shared_state(self, external_id: str, state: Mapping[str, Any]) -> bool:
        """Write ``state`` to the issue's state comment and claim label."""
        normalized = normalize_shared_state(state)
        if not normalized or not get_shared_owner_id(normalized):
            raise ValueError(f"shared state for #{external_id} needs an ownerId")

        current = await self.get_task(external_id)
        wanted = CLAIM_LABELS.get(str(normalized.get("status") or ""))
        edit = ["issue", "edit", str(external_id), "--repo", self.repository]
        for label in current.labels:
            if label in CLAIM_LABELS.values() and label != wanted:
                edit += ["--remove-label", label]
        if wanted and wanted not in current.labels:
            await self._ensure_label(wanted)
            edit += ["--add-label", wanted]
        if len(edit) > 5:
            await self.client.run(edit, parse_json=False)

        body = render_state_comment(normalized)
        existing = next(
            (c for c in reversed(await self._issue_comments(external_id)) if STATE_MARKER in str(c.get("body") or "")),
            None,
        )
        if existing is not None and existing.get("id") is not None:
            await self.client.run(
                [
                    "api", f"repos/{self.repository}/issues/comments/{existing['id']}",
                    "-X", "PATCH",
                    "-f", f"body={body}",
                ],
                parse_json=False,
            )
        else:
            await self.add_comment(external_id, body)
        logger.info("board.shared_state.persisted", issue=str(external_id), owner=get_shared_owner_id(normalized))
        return True

    # -------------------------------------------------------------------------
    # Project board
    # -------------------------------------------------------------------------

    async def _add_to_project(self, url: str) -> None:
        project = str(self.project)
        if not project.isdigit():
            return

        def build_args(owner: Optional[str]) -> List[str]:
            args = ["project", "item-add", project, "--url", url, "--format", "json"]
            return args + ["--owner", owner] if owner else args

        await self.client.run_project_command(f"project-item-add:{project}", build_args, self._owners())

    async def _load_project_fields(self) -> Optional[Dict[str, Any]]:
        if self._project_fields is not None:
            return self._project_fields
        project = str(self.project)

        def view_args(owner: Optional[str]) -> List[str]:
            args = ["project", "view", project, "--format", "json"]
            return args + ["--owner", owner] if owner else args

        def field_args(owner: Optional[str]) -> List[str]:
            args = ["project", "field-list", project, "--format", "json"]
            return args + ["--owner", owner] if owner else args

        view = await self.client.run_project_command(f"project-view:{project}", view_args, self._owners())
        fields = await self.client.run_project_command(f"project-field-list:{project}", field_args, self._owners())
        if isinstance(view, Mapping):
            self._project_node_id = view.get("id")
        for entry in coerce_project_payload(
            fields.get("fields") if isinstance(fields, Mapping) else fields
        ).items:
            if isinstance(entry, Mapping) and str(entry.get("name") or "").lower() == "status":
                self._project_fields = {
                    "id": entry.get("id"),
                    "options": {str(o.get("name")): o.get("id") for o in entry.get("options") or [] if isinstance(o, Mapping)},
                }
                break
        return self._project_fields

    async def _sync_project_status(self, task: RemoteTask, status: TaskStatus) -> None:
        if not str(self.project).isdigit():
            return
        try:
            fields = await self._load_project_fields()
            item_id = task.project_item_id or await self._find_item_id(task.external_id)
        except RateLimitedError:
            raise
        except GhCommandError as e:
            logger.warning("board.project_status.lookup_failed", issue=task.external_id, error=str(e))
            return
        option_name = project_status_names().get(status)
        option_id = (fields or {}).get("options", {}).get(option_name) if option_name else None
        if not (fields and item_id and option_id and self._project_node_id):
            logger.debug("board.project_status.skipped", issue=task.external_id, status=status.value)
            return
        await self.client.run(
            [
                "project", "item-edit",
                "--id", item_id,
                "--project-id", self._project_node_id,
                "--field-id", fields["id"],
                "--single-select-option-id", option_id,
            ],
            parse_json=False,
        )

    async def _find_item_id(self, external_id: str) -> Optional[str]:
        for task in await self._list_project_tasks():
            if task.external_id == str(external_id):
                return task.project_item_id
        return None
