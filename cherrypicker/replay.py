import os
import re
import sys
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .client import CherryPickerError, GitHubAPI
from .git import (
    ApplyConflictError,
    Censor,
    Git,
    GitError,
    InvalidTargetError,
    no_censor,
    working_copy,
)
from .messages import PULL_REQUEST_BODY, PULL_REQUEST_TITLE
from .models import (
    CherryPickRequest,
    Config,
    Conflict,
    Failure,
    ForkHandle,
    ReplayResult,
    Repository,
    Success,
)

ISSUE_REFERENCE_RE = re.compile(
    r"\b(?P<keyword>close[sd]?|fix(?:e[sd])?|resolve[sd]?|ref(?:erence)?s?)"
    r"[:\s]+#(?P<number>\d+)\b",
    re.IGNORECASE,
)
PATCH_MEDIA_TYPE = "application/vnd.github.v3.patch"


def branch_name(source_pr: int, target_branch: str) -> str:
    return f"cherry-pick-{source_pr}-to-{target_branch}"


def patch_filename(repository: Repository, source_pr: int, target_branch: str) -> str:
    normalized = target_branch.replace("/", "-")
    return f"{repository.owner}-{repository.name}-{source_pr}-{normalized}.patch"


def issue_references(message: str, exclude: Iterable[int] = ()) -> List[str]:
    """
    Extracts `close #1`, `fixes #2` style references out of a commit message,
    keeping the keyword and dropping duplicates.
    """
    excluded = {str(number) for number in exclude}
    references: Dict[str, str] = {}
    for match in ISSUE_REFERENCE_RE.finditer(message or ""):
        number = match.group("number")
        if number in excluded or number in references:
            continue
        references[number] = f"{match.group('keyword').lower()} #{number}"
    return list(references.values())


def carried_labels(labels: Iterable[str], config: Config) -> List[str]:
    """
    Returns the labels of the source PR to set on the cherry-pick, without
    the excluded ones and without our own trigger and status markers.
    """
    markers = [
        prefix
        for prefix in (
            config.label_prefix,
            config.picked_label_prefix,
            config.conflict_label_prefix,
        )
        if prefix
    ]
    return [
        label
        for label in labels
        if label not in config.exclude_labels
        and not any(label.startswith(prefix) for prefix in markers)
    ]


class Replayer:  # pylint: disable=too-many-instance-attributes
    """
    Replays the patch of a merged pull request onto a target branch through
    a fork of the repository.
    """

    def __init__(
        self,
        api: GitHubAPI,
        config: Config,
        repository: Repository,
        token: str,
        server_url: str = "https://github.com",
        censor: Censor = no_censor,
        user: Optional[Tuple[str, str]] = None,
    ):
        self.api = api
        self.config = config
        self.repository = repository
        self.token = token
        self.server_url = server_url.rstrip("/")
        self.censor = censor
        self.user = user

    def _clone_url(self, full_name: str) -> str:
        authenticated = self.server_url.replace(
            "https://", f"https://x-access-token:{self.token}@", 1
        )
        return f"{authenticated}/{full_name}.git"

    def _prepare(self, git: Git, fork: ForkHandle, target_branch: str) -> None:
        git.clone(self._clone_url(fork.full_name))
        if self.user:
            name, email = self.user
            git.config("user.name", name)
            git.config("user.email", email)
        git.add_remote("upstream", self._clone_url(self.repository.full_name))
        try:
            git.fetch("upstream", target_branch)
            git.checkout(f"upstream/{target_branch}")
        except GitError as e:
            raise InvalidTargetError(
                f"target branch {target_branch} does not exist in {self.repository.full_name}"
            ) from e

    def _find_open_pull_request(
        self, fork: ForkHandle, branch: str, target_branch: str
    ) -> Optional[Dict[str, Any]]:
        pulls = self.api.get(
            f"repos/{self.repository.full_name}/pulls",
            {"head": f"{fork.owner}:{branch}", "base": target_branch, "state": "open"},
        ).json()
        return pulls[0] if pulls else None

    def _issue_references(self, pull_request: Dict[str, Any]) -> List[str]:
        if not self.config.copy_issue_numbers_from_squashed_commit:
            return []
        sha = pull_request.get("merge_commit_sha")
        if not sha:
            return []
        commit = self.api.get(f"repos/{self.repository.full_name}/commits/{sha}").json()
        message = commit.get("commit", {}).get("message", "")
        return issue_references(message, exclude=[pull_request["number"]])

    def _open_pull_request(
        self,
        request: CherryPickRequest,
        pull_request: Dict[str, Any],
        fork: ForkHandle,
        branch: str,
        target_branch: str,
    ) -> Dict[str, Any]:
        references = self._issue_references(pull_request)
        body = PULL_REQUEST_BODY.format(
            source_pr=request.source_pr,
            target_branch=target_branch,
            requester=request.requester,
            issue_references="".join(f"\n{ref}\n" for ref in references),
            original_body=pull_request.get("body") or "",
        )
        title = PULL_REQUEST_TITLE.format(
            target_branch=target_branch,
            title=pull_request.get("title", ""),
            source_pr=request.source_pr,
        )
        created = self.api.post(
            f"repos/{self.repository.full_name}/pulls",
            {
                "title": title,
                "body": body,
                "head": f"{fork.owner}:{branch}",
                "base": target_branch,
                "maintainer_can_modify": True,
            },
        ).json()

        labels = carried_labels(
            [label["name"] for label in pull_request.get("labels", [])], self.config
        )
        if labels:
            self.api.post(
                f"repos/{self.repository.full_name}/issues/{created['number']}/labels",
                {"labels": labels},
            )
        return created

    def replay(
        self,
        request: CherryPickRequest,
        pull_request: Dict[str, Any],
        fork: ForkHandle,
        target_branch: str,
    ) -> ReplayResult:
        """
        Cherry-picks pull_request onto target_branch and opens the pull request.

        A patch which does not apply gives a Conflict, any other error a
        Failure. Nothing is pushed unless the patch applied.
        """
        branch = branch_name(request.source_pr, target_branch)
        try:
            with working_copy(self.censor, self.user) as (git, scratch):
                self._prepare(git, fork, target_branch)

                if git.branch_exists(branch):
                    existing = self._find_open_pull_request(fork, branch, target_branch)
                    if existing:
                        print(f"♻️ {existing['html_url']} is already open for {target_branch}")
                        return Success(target_branch, existing["html_url"], existing=True)

                git.checkout_new_branch(branch)
                patch_path = self.api.download(
                    f"repos/{self.repository.full_name}/pulls/{request.source_pr}",
                    os.path.join(
                        scratch,
                        patch_filename(self.repository, request.source_pr, target_branch),
                    ),
                    accept=PATCH_MEDIA_TYPE,
                )
                git.am(patch_path)
                git.push_to_named_fork("origin", branch, force=True)
                created = self._open_pull_request(
                    request, pull_request, fork, branch, target_branch
                )
        except ApplyConflictError as e:
            print(f"🚨 {e.reason} ({target_branch})", file=sys.stderr)
            return Conflict(target_branch, e.reason, e.excerpt)
        except CherryPickerError as e:
            print(f"❌ Cherry-pick to {target_branch} failed: {e}", file=sys.stderr)
            return Failure(target_branch, str(e))

        print(f"✅ Opened {created['html_url']} for {target_branch}")
        return Success(target_branch, created["html_url"])
