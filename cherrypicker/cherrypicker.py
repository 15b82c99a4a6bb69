#!/usr/bin/env python3
# Copyright 2025 The Cherrypicker Authors
#
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "requests",
# ]
# ///
import argparse
import functools
import json
import os
import sys
from typing import Callable, Dict, List, Optional, Tuple

from .client import CherryPickerError, GitHubAPI
from .commands import (
    is_cherry_pick_invite_command,
    match_cherry_pick_command,
    match_invite_command,
    match_label,
    picked_branches,
)
from .fork import ensure_fork
from .git import Censor, no_censor, redact
from .models import (
    CherryPickRequest,
    CommentEvent,
    Config,
    Conflict,
    Event,
    Failure,
    ForkHandle,
    LabelEvent,
    ReplayResult,
    Repository,
    Success,
    Trigger,
    parse_event,
)
from .replay import Replayer, branch_name

from .messages import (  # isort:skip
    ALREADY_PICKED,
    CHERRY_PICK_ALREADY_OPEN,
    CHERRY_PICK_CONFLICT,
    CHERRY_PICK_ERROR,
    CHERRY_PICK_SUCCESS,
    CONFLICT_ISSUE_CREATED,
    CONFLICT_ISSUE_TITLE,
    INVITE_MARKER,
    INVITE_SUCCESS,
    PATCH_MISSING,
    PR_NOT_MERGED,
    UNAUTHORIZED,
)


class UnauthorizedError(CherryPickerError):
    """
    The requester is not allowed to trigger cherry-picks with comments.
    """


def is_allowed(
    requester: str,
    repository: Repository,
    allow_all: bool,
    is_member: Callable[[str, Repository], bool],
    is_collaborator: Callable[[str, Repository], bool],
    is_invited: Optional[Callable[[str, Repository], bool]] = None,
) -> bool:
    """
    Tells whether requester may use the comment commands on repository.

    The checks are only called when allow_all is off, and in order until one
    of them grants access.
    """
    if allow_all:
        return True
    if is_member(requester, repository) or is_collaborator(requester, repository):
        return True
    return bool(is_invited and is_invited(requester, repository))


class Cherrypicker:  # pylint: disable=too-many-instance-attributes
    """
    Handles cherry-pick events.
    """

    def __init__(
        self,
        api: GitHubAPI,
        config: Config,
        token: str,
        forking_user: Optional[str] = None,
        server_url: str = "https://github.com",
        censor: Censor = no_censor,
        git_user: Optional[Tuple[str, str]] = None,
    ):
        self.api = api
        self.config = config
        self.token = token
        self.server_url = server_url
        self.censor = censor
        self._login: Optional[str] = None
        self._forking_user = forking_user
        self._git_user = git_user
        self._forks: Dict[str, ForkHandle] = {}
        # reporting errors, kept to fail the run once every branch is done
        self.errors: List[str] = []

    @property
    def login(self) -> str:
        """
        Login of the token owner, author of the comments we post.
        """
        if not self._login:
            self._login = self.api.get("user").json()["login"]
        return self._login

    @property
    def forking_user(self) -> str:
        if not self._forking_user:
            self._forking_user = self.login
        return self._forking_user

    @property
    def git_user(self) -> Tuple[str, str]:
        if not self._git_user:
            login = self.forking_user
            self._git_user = (login, f"{login}@users.noreply.github.com")
        return self._git_user

    def _post_comment(self, repository: Repository, number: int, message: str) -> None:
        """
        Posts a comment to the pull request.
        """
        endpoint = f"repos/{repository.full_name}/issues/{number}/comments"
        self.api.post(endpoint, {"body": message})

    def _add_labels(self, repository: Repository, number: int, labels: List[str]) -> None:
        endpoint = f"repos/{repository.full_name}/issues/{number}/labels"
        self.api.post(endpoint, {"labels": labels})

    def _create_issue(
        self, repository: Repository, title: str, body: str, assignees: List[str]
    ) -> Dict:
        endpoint = f"repos/{repository.full_name}/issues"
        data = {"title": title, "body": body, "assignees": assignees}
        return self.api.post(endpoint, data).json()

    def _is_member(self, user: str, repository: Repository) -> bool:
        return self.api.exists(f"orgs/{repository.owner}/members/{user}")

    def _is_collaborator(self, user: str, repository: Repository) -> bool:
        return self.api.exists(f"repos/{repository.full_name}/collaborators/{user}")

    def _is_invited(self, user: str, repository: Repository, number: int) -> bool:
        """
        Looks for an invitation marker for user in the comments we posted on
        the pull request.
        """
        marker = INVITE_MARKER.format(user=user.lower())
        endpoint = f"repos/{repository.full_name}/issues/{number}/comments"
        comments = self.api.get_all(endpoint)
        return any(
            (comment.get("user") or {}).get("login", "").lower() == self.login.lower()
            and marker in (comment.get("body") or "")
            for comment in comments
        )

    def _try_report(self, what: str, report: Callable[[], object]) -> None:
        """
        Runs a reporting call, recording its failure instead of raising so the
        remaining branches still get processed.
        """
        try:
            report()
        except CherryPickerError as e:
            print(f"❌ Unable to report {what}: {e}", file=sys.stderr)
            self.errors.append(f"{what}: {e}")

    def _fork(self, repository: Repository) -> ForkHandle:
        """
        Resolves the fork of repository, once per run.
        """
        if repository.full_name not in self._forks:
            name = ensure_fork(
                self.api, self.forking_user, repository.owner, repository.name
            )
            self._forks[repository.full_name] = ForkHandle(
                owner=self.forking_user,
                repo_name=name,
                base_repo_full_name=repository.full_name,
            )
        return self._forks[repository.full_name]

    def handle(self, event: Optional[Event]) -> List[ReplayResult]:
        if isinstance(event, CommentEvent):
            return self.on_issue_comment(event)
        if isinstance(event, LabelEvent):
            return self.on_pull_request(event)
        print("ℹ️ Ignoring unsupported event.")
        return []

    def on_issue_comment(self, event: CommentEvent) -> List[ReplayResult]:
        # Only consider new comments in pull requests, merged ones are closed.
        if event.action != "created" or not event.is_pull_request:
            print(f"ℹ️ Ignoring {event.action} comment on #{event.number}.")
            return []

        invite = is_cherry_pick_invite_command(event.body)
        command = match_cherry_pick_command(event.body)
        if not invite and not command.matched:
            print(f"ℹ️ No cherry-pick command found in comment on #{event.number}.")
            return []

        try:
            if invite:
                # invited users cannot invite others
                self.authorize(event.requester, event.repository)
                self.invite(
                    event.repository, event.number, match_invite_command(event.body)
                )
            else:
                self.authorize(event.requester, event.repository, event.number)
        except UnauthorizedError as e:
            print(f"⚠️ {e}", file=sys.stderr)
            self._try_report(
                f"unauthorized request on #{event.number}",
                lambda: self._post_comment(
                    event.repository,
                    event.number,
                    UNAUTHORIZED.format(
                        user=event.requester,
                        owner=event.repository.owner,
                        repo=event.repository.full_name,
                    ),
                ),
            )
            return []

        if not command.matched:
            return []

        request = CherryPickRequest(
            source_pr=event.number,
            target_branches=command.branches,
            requester=event.requester,
            trigger=Trigger.COMMENT,
        )
        return self.cherry_pick(event.repository, request)

    def on_pull_request(self, event: LabelEvent) -> List[ReplayResult]:
        if event.action != "labeled" or not event.label:
            print(f"ℹ️ Ignoring {event.action} event on #{event.number}.")
            return []

        branch = match_label([self.config.label_prefix])(event.label)
        if branch is None:
            print(f"ℹ️ Label {event.label} is not a cherry-pick label.")
            return []

        request = CherryPickRequest(
            source_pr=event.number,
            target_branches=(branch,),
            requester=event.requester,
            trigger=Trigger.LABEL,
        )
        return self.cherry_pick(event.repository, request)

    def authorize(
        self, requester: str, repository: Repository, number: Optional[int] = None
    ) -> None:
        """
        Raises UnauthorizedError unless requester may use the comment
        commands. Invitations recorded on pull request number count too.
        """
        is_invited = None
        if number is not None:
            is_invited = functools.partial(self._is_invited, number=number)
        if not is_allowed(
            requester,
            repository,
            self.config.allow_all,
            self._is_member,
            self._is_collaborator,
            is_invited,
        ):
            raise UnauthorizedError(
                f"{requester} is not allowed to cherry-pick in {repository.full_name}"
            )

    def invite(
        self, repository: Repository, number: int, users: Tuple[str, ...]
    ) -> None:
        """
        Records on the pull request that users may request cherry-picks there.
        The invitation is a marker in our own comment, read back by authorize.
        """
        if not users:
            print(f"ℹ️ No user to invite in comment on #{number}.")
            return
        message = INVITE_SUCCESS.format(
            users=", ".join(f"@{user}" for user in users),
            markers="\n".join(INVITE_MARKER.format(user=user.lower()) for user in users),
        )
        print(f"📨 Inviting {', '.join(users)} on #{number}")
        self._try_report(
            f"invitation on #{number}",
            lambda: self._post_comment(repository, number, message),
        )

    def cherry_pick(
        self, repository: Repository, request: CherryPickRequest
    ) -> List[ReplayResult]:
        """
        Cherry-picks the source PR onto every target branch, one after the
        other, and reports each outcome on the PR.
        """
        number = request.source_pr
        endpoint = f"repos/{repository.full_name}/pulls/{number}"
        branches = ", ".join(f"`{b}`" for b in request.target_branches)
        try:
            pull_request = self.api.get(endpoint).json()
        except CherryPickerError as e:
            print(f"❌ Unable to fetch PR #{number}: {e}", file=sys.stderr)
            self._try_report(
                f"PR #{number}",
                lambda: self._post_comment(
                    repository,
                    number,
                    CHERRY_PICK_ERROR.format(
                        source_pr=number,
                        target_branch=", ".join(request.target_branches),
                        error_text=self.censor(str(e)),
                    ),
                ),
            )
            return [Failure(branch, str(e)) for branch in request.target_branches]

        if not pull_request.get("merged"):
            print(f"⚠️ PR #{number} is not merged.", file=sys.stderr)
            self._try_report(
                f"PR #{number}",
                lambda: self._post_comment(
                    repository,
                    number,
                    PR_NOT_MERGED.format(source_pr=number, branches=branches),
                ),
            )
            return [
                Failure(branch, "pull request is not merged")
                for branch in request.target_branches
            ]

        if not pull_request.get("patch_url"):
            print(f"⚠️ PR #{number} has no patch.", file=sys.stderr)
            self._try_report(
                f"PR #{number}",
                lambda: self._post_comment(
                    repository, number, PATCH_MISSING.format(source_pr=number)
                ),
            )
            return [
                Failure(branch, "pull request has no patch")
                for branch in request.target_branches
            ]

        labels = [label["name"] for label in pull_request.get("labels", [])]
        already_picked = picked_branches(self.config.picked_label_prefix, labels)
        replayer: Optional[Replayer] = None

        results: List[ReplayResult] = []
        for target_branch in request.target_branches:
            if target_branch in already_picked:
                print(f"♻️ PR #{number} already picked to {target_branch}")
                message = ALREADY_PICKED.format(
                    source_pr=number,
                    target_branch=target_branch,
                    picked_label=self.config.picked_label_prefix + target_branch,
                )
                self._try_report(
                    target_branch,
                    functools.partial(self._post_comment, repository, number, message),
                )
                continue

            print(f"🍒 Cherry-picking #{number} to {target_branch}")
            try:
                fork = self._fork(repository)
                if replayer is None:
                    replayer = Replayer(
                        self.api,
                        self.config,
                        repository,
                        self.token,
                        server_url=self.server_url,
                        censor=self.censor,
                        user=self.git_user,
                    )
            except CherryPickerError as e:
                print(f"❌ Unable to prepare the fork: {e}", file=sys.stderr)
                result: ReplayResult = Failure(target_branch, str(e))
            else:
                result = replayer.replay(request, pull_request, fork, target_branch)

            self._try_report(
                target_branch,
                functools.partial(self.report, repository, request, pull_request, result),
            )
            if isinstance(result, Success):
                already_picked.add(target_branch)
            results.append(result)
        return results

    def report(
        self,
        repository: Repository,
        request: CherryPickRequest,
        pull_request: Dict,
        result: ReplayResult,
    ) -> None:
        number = request.source_pr
        target_branch = result.target_branch

        if isinstance(result, Success):
            template = CHERRY_PICK_ALREADY_OPEN if result.existing else CHERRY_PICK_SUCCESS
            self._post_comment(
                repository,
                number,
                template.format(
                    source_pr=number,
                    target_branch=target_branch,
                    requester=request.requester,
                    pull_request_url=result.pull_request_url,
                ),
            )
            self._add_labels(
                repository, number, [self.config.picked_label_prefix + target_branch]
            )
        elif isinstance(result, Conflict):
            conflict = CHERRY_PICK_CONFLICT.format(
                source_pr=number,
                target_branch=target_branch,
                reason=result.reason,
                patch_excerpt=result.patch_excerpt,
                branch=branch_name(number, target_branch),
                patch_url=pull_request.get("patch_url", ""),
            )
            if self.config.create_issue_on_conflict:
                issue = self._create_issue(
                    repository,
                    CONFLICT_ISSUE_TITLE.format(
                        source_pr=number, target_branch=target_branch
                    ),
                    conflict,
                    [request.requester],
                )
                self._post_comment(
                    repository,
                    number,
                    CONFLICT_ISSUE_CREATED.format(
                        source_pr=number,
                        target_branch=target_branch,
                        issue_url=issue["html_url"],
                    ),
                )
            else:
                self._post_comment(repository, number, conflict)
            self._add_labels(
                repository, number, [self.config.conflict_label_prefix + target_branch]
            )
        elif isinstance(result, Failure):
            self._post_comment(
                repository,
                number,
                CHERRY_PICK_ERROR.format(
                    source_pr=number,
                    target_branch=target_branch,
                    error_text=self.censor(result.cause),
                ),
            )


def env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in ("1", "true", "yes", "on")


def split_labels(value: str) -> frozenset:
    return frozenset(
        label.strip() for label in value.replace("\n", ",").split(",") if label.strip()
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Cherry-pick merged GitHub pull requests to release branches.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,  # Show default values in help
    )
    parser.add_argument(
        "--allow-all",
        action=argparse.BooleanOptionalAction,
        default=env_flag("CHERRYPICK_ALLOW_ALL"),
        help="Allow everyone to use the /cherrypick comment command. "
        "Can be overridden via the CHERRYPICK_ALLOW_ALL environment variable.",
    )
    parser.add_argument(
        "--create-issue-on-conflict",
        action=argparse.BooleanOptionalAction,
        default=env_flag("CHERRYPICK_CREATE_ISSUE_ON_CONFLICT"),
        help="Open an issue when the patch does not apply on the target branch. "
        "Can be overridden via the CHERRYPICK_CREATE_ISSUE_ON_CONFLICT environment variable.",
    )
    parser.add_argument(
        "--label-prefix",
        default=os.getenv("CHERRYPICK_LABEL_PREFIX", "needs-cherry-pick/"),
        help="Prefix of the labels requesting a cherry-pick to a branch. "
        "Can be overridden via the CHERRYPICK_LABEL_PREFIX environment variable.",
    )
    parser.add_argument(
        "--picked-label-prefix",
        default=os.getenv("CHERRYPICK_PICKED_LABEL_PREFIX", "cherry-picked/"),
        help="Prefix of the labels added once a branch has been cherry-picked. "
        "Can be overridden via the CHERRYPICK_PICKED_LABEL_PREFIX environment variable.",
    )
    parser.add_argument(
        "--conflict-label-prefix",
        default=os.getenv("CHERRYPICK_CONFLICT_LABEL_PREFIX", "cherry-pick-conflict/"),
        help="Prefix of the labels added when a cherry-pick conflicts. "
        "Can be overridden via the CHERRYPICK_CONFLICT_LABEL_PREFIX environment variable.",
    )
    parser.add_argument(
        "--exclude-labels",
        default=os.getenv("CHERRYPICK_EXCLUDE_LABELS", ""),
        help="Comma or newline separated labels not copied to the cherry-pick PR. "
        "Can be overridden via the CHERRYPICK_EXCLUDE_LABELS environment variable.",
    )
    parser.add_argument(
        "--copy-issue-numbers-from-squashed-commit",
        action=argparse.BooleanOptionalAction,
        default=env_flag("CHERRYPICK_COPY_ISSUE_NUMBERS"),
        help="Reference the issues closed by the squashed commit in the cherry-pick PR. "
        "Can be overridden via the CHERRYPICK_COPY_ISSUE_NUMBERS environment variable.",
    )
    parser.add_argument(
        "--github-token",
        default=os.getenv("GITHUB_TOKEN"),
        help="GitHub API token for authentication. "
        "Required if the GITHUB_TOKEN environment variable is not set.",
    )
    parser.add_argument(
        "--event-name",
        default=os.getenv("GITHUB_EVENT_NAME"),
        help="Name of the webhook event (issue_comment or pull_request). "
        "Can be overridden via the GITHUB_EVENT_NAME environment variable.",
    )
    parser.add_argument(
        "--event-path",
        default=os.getenv("GITHUB_EVENT_PATH"),
        help="Path of the JSON file holding the webhook payload. "
        "Can be overridden via the GITHUB_EVENT_PATH environment variable.",
    )
    parser.add_argument(
        "--forking-user",
        default=os.getenv("CHERRYPICK_FORKING_USER"),
        help="Account owning the fork the cherry-picks are pushed to, "
        "defaults to the owner of the token. "
        "Can be overridden via the CHERRYPICK_FORKING_USER environment variable.",
    )
    parser.add_argument(
        "--git-user-name",
        default=os.getenv("GIT_COMMITTER_NAME"),
        help="Name used for the git commits. "
        "Can be overridden via the GIT_COMMITTER_NAME environment variable.",
    )
    parser.add_argument(
        "--git-user-email",
        default=os.getenv("GIT_COMMITTER_EMAIL"),
        help="Email used for the git commits. "
        "Can be overridden via the GIT_COMMITTER_EMAIL environment variable.",
    )
    parser.add_argument(
        "--api-url",
        default=os.getenv("GITHUB_API_URL", "https://api.github.com"),
        help="Base URL of the GitHub API. "
        "Can be overridden via the GITHUB_API_URL environment variable.",
    )
    parser.add_argument(
        "--server-url",
        default=os.getenv("GITHUB_SERVER_URL", "https://github.com"),
        help="Base URL used to clone repositories. "
        "Can be overridden via the GITHUB_SERVER_URL environment variable.",
    )
    parsed = parser.parse_args()
    if not parsed.github_token:
        parser.error(
            "GitHub API token is required. Use --github-token or GITHUB_TOKEN env variable."
        )
    if not parsed.event_name:
        parser.error(
            "Event name is required. Use --event-name or GITHUB_EVENT_NAME env variable."
        )
    if not parsed.event_path:
        parser.error(
            "Event payload is required. Use --event-path or GITHUB_EVENT_PATH env variable."
        )
    return parsed


def config_from_args(args: argparse.Namespace) -> Config:
    return Config(
        allow_all=args.allow_all,
        create_issue_on_conflict=args.create_issue_on_conflict,
        label_prefix=args.label_prefix,
        picked_label_prefix=args.picked_label_prefix,
        conflict_label_prefix=args.conflict_label_prefix,
        exclude_labels=split_labels(args.exclude_labels),
        copy_issue_numbers_from_squashed_commit=args.copy_issue_numbers_from_squashed_commit,
    )


def main():
    args = parse_args()
    with open(args.event_path, encoding="utf-8") as fp:
        payload = json.load(fp)

    headers = {
        "Authorization": f"Bearer {args.github_token}",
        "Accept": "application/vnd.github.v3+json",
    }
    api = GitHubAPI(args.api_url.rstrip("/"), headers)
    git_user = None
    if args.git_user_name and args.git_user_email:
        git_user = (args.git_user_name, args.git_user_email)
    cherrypicker = Cherrypicker(
        api,
        config_from_args(args),
        args.github_token,
        forking_user=args.forking_user,
        server_url=args.server_url,
        censor=redact(args.github_token),
        git_user=git_user,
    )

    try:
        results = cherrypicker.handle(parse_event(args.event_name, payload))
    except CherryPickerError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)

    if cherrypicker.errors or any(isinstance(result, Failure) for result in results):
        sys.exit(1)


if __name__ == "__main__":
    main()
