import contextlib
import os
import re
import shutil
import subprocess
import tempfile
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from .client import CherryPickerError

Censor = Callable[[str], str]

# lines of `git am` output telling the patch itself is at fault
APPLY_FAILURE_RE = re.compile(
    r"^(?:error: patch failed: (?P<failed>\S+?):\d+"
    r"|error: (?P<missing>\S+): does not exist in index"
    r"|CONFLICT \([^)]*\): .*?(?:in|for) (?P<conflict>\S+)"
    r"|Patch failed at .*)$",
    re.MULTILINE,
)
MAX_EXCERPT_LINES = 20


def no_censor(content: str) -> str:
    return content


def redact(*secrets: str) -> Censor:
    """
    Returns a censor replacing every secret with a placeholder.
    """
    secrets_to_hide = [secret for secret in secrets if secret]

    def censor(content: str) -> str:
        for secret in secrets_to_hide:
            content = content.replace(secret, "***")
        return content

    return censor


class GitError(CherryPickerError):
    """
    A git command exited with an error.
    """

    def __init__(self, args: Sequence[str], returncode: int, output: str):
        self.command = " ".join(args)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"git {self.command} failed with exit code {returncode}: {output.strip()}"
        )


class InvalidTargetError(CherryPickerError):
    """
    The target branch of a cherry-pick cannot be found.
    """


class ApplyConflictError(CherryPickerError):
    """
    The patch does not apply on top of the target branch.
    """

    def __init__(self, reason: str, excerpt: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.excerpt = excerpt


def describe_apply_failure(output: str) -> Optional[Tuple[str, str]]:
    """
    Returns (reason, excerpt) when `git am` output describes a patch that does
    not apply, None for any other kind of failure.
    """
    matches = list(APPLY_FAILURE_RE.finditer(output))
    if not matches and "patch does not apply" not in output:
        return None

    files: List[str] = []
    for match in matches:
        name = match.group("failed") or match.group("missing") or match.group("conflict")
        if name and name not in files:
            files.append(name)

    if files:
        reason = "Patch does not apply cleanly on: " + ", ".join(files)
    else:
        reason = "Patch does not apply cleanly"
    excerpt = "\n".join(output.strip().splitlines()[:MAX_EXCERPT_LINES])
    return reason, excerpt


class Git:
    """
    Runs git commands in a single working directory.
    """

    timeout: int = 300

    def __init__(
        self,
        directory: str,
        censor: Censor = no_censor,
        user: Optional[Tuple[str, str]] = None,
    ):
        self.directory = directory
        self.censor = censor
        self.user = user
        self._cleaned = False

    def _run(
        self, *args: str, check: bool = True, cwd: Optional[str] = None
    ) -> subprocess.CompletedProcess:
        censored = [self.censor(arg) for arg in args]
        print(f"🔧 git {' '.join(censored)}")
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=cwd or self.directory,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise GitError(censored, -1, f"timed out after {self.timeout}s") from e
        if check and result.returncode != 0:
            output = self.censor((result.stdout or "") + (result.stderr or ""))
            raise GitError(censored, result.returncode, output)
        return result

    def clone(self, url: str) -> None:
        self._run(
            "clone", url, self.directory, cwd=os.path.dirname(self.directory)
        )

    def config(self, *args: str) -> None:
        self._run("config", *args)

    def add_remote(self, name: str, url: str) -> None:
        self._run("remote", "add", name, url)

    def fetch(self, remote: str, ref: str) -> None:
        self._run("fetch", remote, ref)

    def checkout(self, commitlike: str) -> None:
        self._run("checkout", commitlike)

    def checkout_new_branch(self, branch: str) -> None:
        self._run("checkout", "-b", branch)

    def branch_exists(self, branch: str) -> bool:
        """
        Returns True if the branch exists on the origin remote.
        """
        result = self._run(
            "ls-remote", "--exit-code", "--heads", "origin", branch, check=False
        )
        return result.returncode == 0

    def am(self, path: str) -> None:
        """
        Applies the patch at path with a three-way merge, aborting the
        application if it fails.
        """
        try:
            self._run("am", "--3way", path)
        except GitError as e:
            with contextlib.suppress(GitError):
                self._run("am", "--abort")
            failure = describe_apply_failure(e.output)
            if failure is None:
                raise e
            raise ApplyConflictError(*failure) from e

    def commit(self, title: str, body: str) -> None:
        self._run("add", "--all")
        args = ["commit", "--message", title, "--message", body]
        if self.user:
            name, email = self.user
            args += ["--author", f"{name} <{email}>"]
        self._run(*args)

    def push_to_named_fork(self, fork_name: str, branch: str, force: bool) -> None:
        args = ["push"]
        if force:
            args.append("--force")
        args += [fork_name, branch]
        self._run(*args)

    def clean(self) -> None:
        if self._cleaned:
            return
        self._cleaned = True
        shutil.rmtree(self.directory, ignore_errors=True)


@contextlib.contextmanager
def working_copy(
    censor: Censor = no_censor, user: Optional[Tuple[str, str]] = None
) -> Iterator[Tuple[Git, str]]:
    """
    Yields a Git bound to a fresh directory and a scratch directory next to it.

    Both are removed on exit, whatever happened in between.
    """
    scratch = tempfile.mkdtemp(prefix="cherrypicker-")
    git = Git(os.path.join(scratch, "repo"), censor=censor, user=user)
    try:
        yield git, scratch
    finally:
        git.clean()
        shutil.rmtree(scratch, ignore_errors=True)
        print(f"🧹 Removed working copy {scratch}")
