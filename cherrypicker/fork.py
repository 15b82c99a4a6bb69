import sys
import time
from typing import Callable

from .client import CherryPickerError, GitHubAPI, PlatformApiError

# GitHub asks to contact support when a fork takes longer than five minutes
FORK_POLL_INTERVAL = 15
FORK_POLL_TIMEOUT = 6 * 60


class ForkUnavailableError(CherryPickerError):
    """
    The fork could not be created or did not show up in time.
    """


def is_forked(api: GitHubAPI, forking_user: str, owner: str, repo: str) -> bool:
    """
    Returns True if forking_user owns a fork of owner/repo named repo.
    """
    fork = f"{forking_user}/{repo}"
    repos = api.get_all(f"users/{forking_user}/repos")
    forked_repo = next(
        (r for r in repos if r.get("fork") and r.get("full_name") == fork), None
    )
    if forked_repo is None:
        return False

    details = api.get(f"repos/{forking_user}/{forked_repo['name']}").json()
    parent = details.get("parent") or {}
    return parent.get("full_name") == f"{owner}/{repo}"


def wait_for_repo(
    api: GitHubAPI,
    owner: str,
    repo: str,
    interval: float = FORK_POLL_INTERVAL,
    timeout: float = FORK_POLL_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Polls every interval seconds until owner/repo is retrievable as a fork,
    giving up after timeout seconds.
    """
    attempts = max(1, int(timeout // interval))
    for _ in range(attempts):
        sleep(interval)
        try:
            if api.get(f"repos/{owner}/{repo}").json().get("fork"):
                return
        except PlatformApiError as e:
            print(f"⚠️ Error getting bot repository {owner}/{repo}: {e}", file=sys.stderr)
    raise ForkUnavailableError(
        f"timed out waiting for {owner}/{repo} to appear on GitHub"
    )


def ensure_fork(
    api: GitHubAPI,
    forking_user: str,
    owner: str,
    repo: str,
    interval: float = FORK_POLL_INTERVAL,
    timeout: float = FORK_POLL_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Makes sure forking_user has a fork of owner/repo and returns its name.

    When there is none, a fork is requested, into the forking_user
    organization when it is not the token owner, and we wait for GitHub to finish
    provisioning it. A fork created under another name than repo (naming
    conflict in the forking account) is refused.
    """
    if is_forked(api, forking_user, owner, repo):
        print(f"✅ Using existing fork {forking_user}/{repo}")
        return repo

    # forks land in the token owner account unless an organization is named
    login = api.get("user").json()["login"]
    data = {}
    if login.lower() != forking_user.lower():
        data["organization"] = forking_user

    print(f"🍴 Forking {owner}/{repo} into {forking_user}")
    forked = api.post(f"repos/{owner}/{repo}/forks", data).json()
    name = forked.get("name", repo)
    if name != repo:
        raise ForkUnavailableError(
            f"the fork of {owner}/{repo} was created as {forking_user}/{name}, "
            f"expected {forking_user}/{repo}"
        )

    wait_for_repo(api, forking_user, repo, interval, timeout, sleep)
    return repo
