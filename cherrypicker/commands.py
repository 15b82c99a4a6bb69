import re
from typing import Callable, Iterable, NamedTuple, Optional, Sequence, Set, Tuple

CHERRY_PICK_RE = re.compile(r"^/(?:cherrypick|cherry-pick)\s+(.+)$")
CHERRY_PICK_INVITE_RE = re.compile(r"^/(?:cherrypick|cherry-pick)-invite\b(.*)$")


class CommandMatch(NamedTuple):
    matched: bool
    branches: Tuple[str, ...]


def match_cherry_pick_command(text: str) -> CommandMatch:
    """
    Extracts the target branches of every `/cherrypick <branch>` line.

    Branches keep the order they first appear in, duplicates are dropped.
    """
    branches = {}
    for line in (text or "").splitlines():
        match = CHERRY_PICK_RE.match(line)
        if not match:
            continue
        branch = match.group(1).strip()
        if branch:
            branches.setdefault(branch, None)
    return CommandMatch(matched=bool(branches), branches=tuple(branches))


def is_cherry_pick_invite_command(text: str) -> bool:
    return any(
        CHERRY_PICK_INVITE_RE.match(line) for line in (text or "").splitlines()
    )


def match_invite_command(text: str) -> Tuple[str, ...]:
    """
    Returns the users named after `/cherrypick-invite`, as in
    `/cherrypick-invite @alice bob`, without the leading @.
    """
    users = {}
    for line in (text or "").splitlines():
        match = CHERRY_PICK_INVITE_RE.match(line)
        if not match:
            continue
        for user in re.split(r"[\s,]+", match.group(1)):
            user = user.lstrip("@")
            if user:
                users.setdefault(user, None)
    return tuple(users)


def match_label(prefixes: Sequence[str]) -> Callable[[str], Optional[str]]:
    """
    Returns a matcher giving the branch encoded in a label, using the first
    prefix of the list the label starts with.
    """
    usable = [prefix for prefix in prefixes if prefix]

    def matcher(label: str) -> Optional[str]:
        for prefix in usable:
            if label.startswith(prefix):
                return label[len(prefix) :] or None
        return None

    return matcher


def picked_branches(picked_label_prefix: str, labels: Iterable[str]) -> Set[str]:
    matcher = match_label([picked_label_prefix])
    return {branch for branch in map(matcher, labels) if branch}
