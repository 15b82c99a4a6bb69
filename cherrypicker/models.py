import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union


class Trigger(enum.Enum):
    COMMENT = "comment"
    LABEL = "label"


@dataclass(frozen=True)
class Repository:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def from_payload(cls, repository: Dict[str, Any]) -> "Repository":
        return cls(owner=repository["owner"]["login"], name=repository["name"])


@dataclass(frozen=True)
class CommentEvent:
    action: str
    body: str
    issue_state: str
    is_pull_request: bool
    number: int
    requester: str
    repository: Repository


@dataclass(frozen=True)
class LabelEvent:
    action: str
    label: Optional[str]
    number: int
    requester: str
    repository: Repository


Event = Union[CommentEvent, LabelEvent]


def parse_event(event_name: str, payload: Dict[str, Any]) -> Optional[Event]:
    """
    Builds the event for a webhook payload, None for events we do not handle.
    """
    if event_name == "issue_comment":
        issue = payload["issue"]
        return CommentEvent(
            action=payload["action"],
            body=payload["comment"].get("body") or "",
            issue_state=issue.get("state", ""),
            is_pull_request=bool(issue.get("pull_request")),
            number=issue["number"],
            requester=payload["comment"]["user"]["login"],
            repository=Repository.from_payload(payload["repository"]),
        )
    if event_name in ("pull_request", "pull_request_target"):
        label = payload.get("label")
        return LabelEvent(
            action=payload["action"],
            label=label["name"] if label else None,
            number=payload["number"],
            requester=payload["sender"]["login"],
            repository=Repository.from_payload(payload["repository"]),
        )
    return None


@dataclass(frozen=True)
class CherryPickRequest:
    source_pr: int
    target_branches: Tuple[str, ...]
    requester: str
    trigger: Trigger


@dataclass(frozen=True)
class ForkHandle:
    owner: str
    repo_name: str
    base_repo_full_name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo_name}"


@dataclass(frozen=True)
class Success:
    target_branch: str
    pull_request_url: str
    existing: bool = False


@dataclass(frozen=True)
class Conflict:
    target_branch: str
    reason: str
    patch_excerpt: str = ""


@dataclass(frozen=True)
class Failure:
    target_branch: str
    cause: str


ReplayResult = Union[Success, Conflict, Failure]


@dataclass(frozen=True)
class Config:  # pylint: disable=too-many-instance-attributes
    # everyone may trigger picks through comments
    allow_all: bool = False
    create_issue_on_conflict: bool = False
    label_prefix: str = "needs-cherry-pick/"
    picked_label_prefix: str = "cherry-picked/"
    conflict_label_prefix: str = "cherry-pick-conflict/"
    # labels never copied from the source PR
    exclude_labels: frozenset = field(default_factory=frozenset)
    copy_issue_numbers_from_squashed_commit: bool = False
