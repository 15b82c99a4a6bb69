from unittest.mock import MagicMock

import pytest

from cherrypicker import cherrypicker as cherrypicker_module
from cherrypicker.cherrypicker import Cherrypicker, is_allowed
from cherrypicker.client import GitHubAPI, PlatformApiError
from cherrypicker.fork import ForkUnavailableError
from cherrypicker.messages import INVITE_MARKER
from cherrypicker.models import (
    CommentEvent,
    Config,
    Conflict,
    Failure,
    ForkHandle,
    LabelEvent,
    Repository,
    Success,
    Trigger,
)
from cherrypicker.replay import Replayer

REPOSITORY = Repository("owner", "repo")


class MyFakeResponse:
    def __init__(self, body):
        self.body = body

    def json(self):
        return self.body


def pull_request(merged=True, labels=(), patch_url="https://github.com/owner/repo/pull/42.patch"):
    return {
        "number": 42,
        "title": "Fix the frobnicator",
        "merged": merged,
        "state": "closed" if merged else "open",
        "patch_url": patch_url,
        "labels": [{"name": label} for label in labels],
    }


@pytest.fixture
def mock_api():
    api = GitHubAPI("https://api.github.com", {"Authorization": "Bearer test_token"})
    for method in ("get", "get_all", "post", "exists"):
        setattr(api, method, MagicMock())
    api.responses = {
        "user": {"login": "cherry-bot"},
        "repos/owner/repo/pulls/42": pull_request(),
    }
    api.get.side_effect = lambda endpoint, params=None: MyFakeResponse(
        api.responses[endpoint]
    )
    api.get_all.return_value = []
    api.exists.return_value = True
    return api


@pytest.fixture
def ensure_fork(monkeypatch):
    mock = MagicMock(return_value="repo")
    monkeypatch.setattr(cherrypicker_module, "ensure_fork", mock)
    return mock


@pytest.fixture
def replays(monkeypatch):
    """
    Records the replayed branches and answers with the result registered for
    the branch, a Success by default.
    """
    calls = []
    results = {}

    def fake_replay(self, request, pull_request, fork, target_branch):
        calls.append((request, fork, target_branch))
        return results.get(
            target_branch,
            Success(target_branch, f"https://github.com/owner/repo/pull/{100 + len(calls)}"),
        )

    monkeypatch.setattr(Replayer, "replay", fake_replay)
    fake_replay.calls = calls
    fake_replay.results = results
    return fake_replay


def make_cherrypicker(api, **config):
    return Cherrypicker(api, Config(**config), "test_token", forking_user="bot")


def comment_event(body, action="created", state="open", is_pull_request=True):
    return CommentEvent(
        action=action,
        body=body,
        issue_state=state,
        is_pull_request=is_pull_request,
        number=42,
        requester="alice",
        repository=REPOSITORY,
    )


def label_event(label, action="labeled"):
    return LabelEvent(
        action=action, label=label, number=42, requester="alice", repository=REPOSITORY
    )


def comments(api):
    return [
        call.args[1]["body"]
        for call in api.post.call_args_list
        if call.args[0] == "repos/owner/repo/issues/42/comments"
    ]


def labels_added(api):
    return [
        call.args[1]["labels"]
        for call in api.post.call_args_list
        if call.args[0] == "repos/owner/repo/issues/42/labels"
    ]


def test_is_allowed():
    never = MagicMock(return_value=False)
    always = MagicMock(return_value=True)

    assert is_allowed("alice", REPOSITORY, True, never, never) is True
    never.assert_not_called()
    assert is_allowed("alice", REPOSITORY, False, always, never) is True
    assert is_allowed("alice", REPOSITORY, False, never, always) is True
    assert is_allowed("alice", REPOSITORY, False, never, never) is False
    never.assert_called_with("alice", REPOSITORY)
    assert is_allowed("alice", REPOSITORY, False, never, never, always) is True
    assert is_allowed("alice", REPOSITORY, False, never, never, never) is False


@pytest.mark.parametrize(
    "event",
    [
        comment_event("/cherrypick release-1.0", action="edited"),
        comment_event("/cherrypick release-1.0", action="deleted"),
        comment_event("/cherrypick release-1.0", is_pull_request=False),
        comment_event("LGTM, thanks!"),
        label_event("needs-cherry-pick/release-1.0", action="unlabeled"),
        label_event("bug"),
        label_event(None),
        None,
    ],
)
def test_ignored_events(mock_api, replays, event):
    assert make_cherrypicker(mock_api).handle(event) == []
    mock_api.get.assert_not_called()
    mock_api.post.assert_not_called()
    assert replays.calls == []


def test_unauthorized_comment(mock_api, replays):
    mock_api.exists.return_value = False

    assert make_cherrypicker(mock_api).handle(comment_event("/cherrypick release-1.0")) == []

    mock_api.exists.assert_any_call("orgs/owner/members/alice")
    mock_api.exists.assert_any_call("repos/owner/repo/collaborators/alice")
    assert "Insufficient Permissions" in comments(mock_api)[0]
    assert replays.calls == []


def test_allow_all_skips_membership_checks(mock_api, ensure_fork, replays):
    picker = make_cherrypicker(mock_api, allow_all=True)
    results = picker.handle(comment_event("/cherrypick release-1.0"))

    assert [type(result) for result in results] == [Success]
    mock_api.exists.assert_not_called()


def test_comment_picks_every_branch_in_order(mock_api, ensure_fork, replays):
    picker = make_cherrypicker(mock_api)
    results = picker.handle(
        comment_event("/cherrypick release/v1.2\n/cherrypick release/v1.3")
    )

    assert results == [
        Success("release/v1.2", "https://github.com/owner/repo/pull/101"),
        Success("release/v1.3", "https://github.com/owner/repo/pull/102"),
    ]
    assert [branch for _, _, branch in replays.calls] == ["release/v1.2", "release/v1.3"]
    request, fork, _ = replays.calls[0]
    assert request.source_pr == 42
    assert request.trigger == Trigger.COMMENT
    assert request.requester == "alice"
    assert fork == ForkHandle("bot", "repo", "owner/repo")
    # the fork is resolved once for the whole run
    ensure_fork.assert_called_once_with(mock_api, "bot", "owner", "repo")
    mock_api.get.assert_called_once_with("repos/owner/repo/pulls/42")

    posted = comments(mock_api)
    assert len(posted) == 2
    assert "https://github.com/owner/repo/pull/101" in posted[0]
    assert "https://github.com/owner/repo/pull/102" in posted[1]
    assert labels_added(mock_api) == [
        ["cherry-picked/release/v1.2"],
        ["cherry-picked/release/v1.3"],
    ]


def test_conflict_does_not_stop_other_branches(mock_api, ensure_fork, replays):
    replays.results["release-1.0"] = Conflict(
        "release-1.0", "Patch does not apply cleanly on: pkg/frob.go", "CONFLICT (content)"
    )

    results = make_cherrypicker(mock_api).handle(
        comment_event("/cherrypick release-1.0\n/cherrypick release-2.0")
    )

    assert [type(result) for result in results] == [Conflict, Success]
    posted = comments(mock_api)
    assert "Cherry Pick Conflict" in posted[0]
    assert "pkg/frob.go" in posted[0]
    assert "cherry-pick-42-to-release-1.0" in posted[0]
    assert "Cherry Pick Successful" in posted[1]
    assert labels_added(mock_api) == [
        ["cherry-pick-conflict/release-1.0"],
        ["cherry-picked/release-2.0"],
    ]


def test_conflict_creates_issue(mock_api, ensure_fork, replays):
    replays.results["release-1.0"] = Conflict("release-1.0", "Patch does not apply cleanly")
    mock_api.post.return_value = MyFakeResponse(
        {"number": 90, "html_url": "https://github.com/owner/repo/issues/90"}
    )

    make_cherrypicker(mock_api, create_issue_on_conflict=True).handle(
        comment_event("/cherrypick release-1.0")
    )

    mock_api.post.assert_any_call(
        "repos/owner/repo/issues",
        {
            "title": "Cherry-pick #42 to release-1.0 failed",
            "body": mock_api.post.call_args_list[0].args[1]["body"],
            "assignees": ["alice"],
        },
    )
    assert "Cherry Pick Conflict" in mock_api.post.call_args_list[0].args[1]["body"]
    assert "https://github.com/owner/repo/issues/90" in comments(mock_api)[0]
    assert labels_added(mock_api) == [["cherry-pick-conflict/release-1.0"]]


def test_failure_is_reported_without_label(mock_api, ensure_fork, replays):
    replays.results["nope"] = Failure("nope", "target branch nope does not exist in owner/repo")

    results = make_cherrypicker(mock_api).handle(comment_event("/cherrypick nope"))

    assert results == [Failure("nope", "target branch nope does not exist in owner/repo")]
    assert "Cherry Pick Failed" in comments(mock_api)[0]
    assert "target branch nope does not exist" in comments(mock_api)[0]
    assert labels_added(mock_api) == []


def test_fork_error_is_a_failure(mock_api, ensure_fork, replays):
    ensure_fork.side_effect = ForkUnavailableError("timed out waiting for bot/repo")

    results = make_cherrypicker(mock_api).handle(label_event("needs-cherry-pick/release-1.0"))

    assert results == [Failure("release-1.0", "timed out waiting for bot/repo")]
    assert replays.calls == []
    assert "timed out waiting for bot/repo" in comments(mock_api)[0]


def test_already_picked_branch_is_skipped(mock_api, ensure_fork, replays):
    mock_api.responses["repos/owner/repo/pulls/42"] = pull_request(
        labels=["cherry-picked/release-1.0"]
    )

    results = make_cherrypicker(mock_api).handle(
        comment_event("/cherrypick release-1.0\n/cherrypick release-2.0")
    )

    assert [result.target_branch for result in results] == ["release-2.0"]
    assert [branch for _, _, branch in replays.calls] == ["release-2.0"]
    assert "Already Cherry-Picked" in comments(mock_api)[0]
    assert labels_added(mock_api) == [["cherry-picked/release-2.0"]]


def test_duplicate_branch_in_one_event_is_picked_once(mock_api, ensure_fork, replays):
    make_cherrypicker(mock_api).handle(
        comment_event("/cherrypick release-1.0\n/cherry-pick release-1.0")
    )
    assert [branch for _, _, branch in replays.calls] == ["release-1.0"]


def test_unmerged_pull_request_is_rejected(mock_api, ensure_fork, replays):
    mock_api.responses["repos/owner/repo/pulls/42"] = pull_request(merged=False)

    results = make_cherrypicker(mock_api).handle(comment_event("/cherrypick release-1.0"))

    assert results == [Failure("release-1.0", "pull request is not merged")]
    assert "Pull Request Not Merged" in comments(mock_api)[0]
    assert replays.calls == []
    ensure_fork.assert_not_called()


def test_missing_patch_is_rejected(mock_api, ensure_fork, replays):
    mock_api.responses["repos/owner/repo/pulls/42"] = pull_request(patch_url=None)

    results = make_cherrypicker(mock_api).handle(comment_event("/cherrypick release-1.0"))

    assert results == [Failure("release-1.0", "pull request has no patch")]
    assert "Patch Not Available" in comments(mock_api)[0]
    assert replays.calls == []


def test_label_event(mock_api, ensure_fork, replays):
    results = make_cherrypicker(mock_api).handle(label_event("needs-cherry-pick/release-1.0"))

    assert [result.target_branch for result in results] == ["release-1.0"]
    request, _, _ = replays.calls[0]
    assert request.trigger == Trigger.LABEL
    assert request.target_branches == ("release-1.0",)
    # labels need no membership check
    mock_api.exists.assert_not_called()


def test_comment_on_closed_merged_pull_request(mock_api, ensure_fork, replays):
    results = make_cherrypicker(mock_api).handle(
        comment_event("/cherrypick release-1.0", state="closed")
    )
    assert [type(result) for result in results] == [Success]


def test_report_error_does_not_stop_other_branches(mock_api, ensure_fork, replays):
    posts = []

    def fake_post(endpoint, data):
        posts.append(endpoint)
        if len(posts) == 1:
            raise PlatformApiError("HTTP Error: 502 - Bad Gateway", status_code=502)
        return MyFakeResponse({})

    mock_api.post.side_effect = fake_post
    picker = make_cherrypicker(mock_api)

    results = picker.handle(comment_event("/cherrypick a\n/cherrypick b"))

    assert [branch for _, _, branch in replays.calls] == ["a", "b"]
    assert [type(result) for result in results] == [Success, Success]
    assert len(comments(mock_api)) == 2
    assert labels_added(mock_api) == [["cherry-picked/b"]]
    assert len(picker.errors) == 1
    assert picker.errors[0].startswith("a: HTTP Error: 502")


def test_pull_request_fetch_error_is_reported(mock_api, ensure_fork, replays):
    mock_api.get.side_effect = PlatformApiError("HTTP Error: 500", status_code=500)

    results = make_cherrypicker(mock_api).handle(
        label_event("needs-cherry-pick/release-1.0")
    )

    assert results == [Failure("release-1.0", "HTTP Error: 500")]
    assert "Cherry Pick Failed" in comments(mock_api)[0]
    assert replays.calls == []


def test_invite(mock_api, ensure_fork, replays):
    results = make_cherrypicker(mock_api).handle(comment_event("/cherrypick-invite @bob"))

    assert results == []
    posted = comments(mock_api)
    assert "@bob" in posted[0]
    assert INVITE_MARKER.format(user="bob") in posted[0]
    assert replays.calls == []


def test_invite_without_user(mock_api, ensure_fork, replays):
    assert make_cherrypicker(mock_api).handle(comment_event("/cherrypick-invite")) == []
    mock_api.post.assert_not_called()


def test_invite_requires_membership(mock_api, ensure_fork, replays):
    mock_api.exists.return_value = False
    mock_api.get_all.return_value = [
        {"user": {"login": "cherry-bot"}, "body": INVITE_MARKER.format(user="alice")}
    ]

    make_cherrypicker(mock_api).handle(comment_event("/cherrypick-invite bob"))

    assert "Insufficient Permissions" in comments(mock_api)[0]
    mock_api.get_all.assert_not_called()


def test_invited_user_may_cherry_pick(mock_api, ensure_fork, replays):
    mock_api.exists.return_value = False
    mock_api.get_all.return_value = [
        {"user": {"login": "cherry-bot"}, "body": INVITE_MARKER.format(user="alice")}
    ]

    results = make_cherrypicker(mock_api).handle(comment_event("/cherrypick release-1.0"))

    assert [type(result) for result in results] == [Success]
    mock_api.get_all.assert_called_once_with("repos/owner/repo/issues/42/comments")


def test_invitation_from_another_author_is_ignored(mock_api, ensure_fork, replays):
    mock_api.exists.return_value = False
    mock_api.get_all.return_value = [
        {"user": {"login": "alice"}, "body": INVITE_MARKER.format(user="alice")}
    ]

    assert make_cherrypicker(mock_api).handle(comment_event("/cherrypick release-1.0")) == []
    assert "Insufficient Permissions" in comments(mock_api)[0]
    assert replays.calls == []


def test_forking_user_defaults_to_token_owner(mock_api):
    picker = Cherrypicker(mock_api, Config(), "test_token")

    assert picker.forking_user == "cherry-bot"
    assert picker.git_user == ("cherry-bot", "cherry-bot@users.noreply.github.com")
    mock_api.get.assert_called_once_with("user")
