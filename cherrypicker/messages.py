FOOTER = "*Automated by the Cherrypicker 🍒*"

PULL_REQUEST_TITLE = "[{target_branch}] {title} (#{source_pr})"

PULL_REQUEST_BODY = """This is an automated cherry-pick of #{source_pr} to `{target_branch}`.

Requested by: @{requester}
{issue_references}
---

{original_body}
"""

CHERRY_PICK_SUCCESS = """
### ✅ Cherry Pick Successful

Cherry-picked PR #{source_pr} to branch `{target_branch}`.

*Details:*
* Source PR: #{source_pr}
* Target Branch: `{target_branch}`
* Requested by: @{requester}
* New pull request: {pull_request_url}


""" + FOOTER

CHERRY_PICK_ALREADY_OPEN = """
### ♻️ Cherry Pick Already Open

A pull request cherry-picking #{source_pr} to `{target_branch}` is already open:
{pull_request_url}

It was not created again.


""" + FOOTER

ALREADY_PICKED = """
### ♻️ Already Cherry-Picked

PR #{source_pr} already carries the `{picked_label}` label, nothing to do for
branch `{target_branch}`.


""" + FOOTER

CHERRY_PICK_ERROR = """
### ❌ Cherry Pick Failed

Failed to cherry-pick changes from PR #{source_pr} to branch `{target_branch}`:
* Error: `{error_text}`

*Possible causes:*
* Invalid or missing target branch
* Missing permissions on the fork
* GitHub API errors

Please resolve any issues and try again.


""" + FOOTER

CHERRY_PICK_CONFLICT = """
### 🚨 Cherry Pick Conflict

Merge conflict detected while cherry-picking PR #{source_pr} to `{target_branch}`.
* Reason: {reason}

```
{patch_excerpt}
```

To resolve this conflict:
1. Create a new branch from `{target_branch}`

```shell
git checkout -b {branch} origin/{target_branch}
```

2. Apply the patch of the pull request with a three-way merge

```shell
curl -L {patch_url} | git am --3way
```

3. Resolve the conflicts with your favorite editor and run `git am --continue`
4. Create a new PR with your changes

```shell
git push YOURFORKREMOTE {branch} --force-with-lease
gh pr create --base {target_branch} --head YOURFORK:{branch}
```

Need assistance? Please contact the repository maintainers.


""" + FOOTER

CONFLICT_ISSUE_TITLE = "Cherry-pick #{source_pr} to {target_branch} failed"

CONFLICT_ISSUE_CREATED = """
### 🚨 Cherry Pick Conflict

Cherry-picking PR #{source_pr} to `{target_branch}` did not apply cleanly,
the conflict is tracked in {issue_url}.


""" + FOOTER

PR_NOT_MERGED = """
### ⚠️ Pull Request Not Merged

PR #{source_pr} has not been merged yet, it cannot be cherry-picked to
{branches}.

Please run the command again once the PR is merged.


""" + FOOTER

PATCH_MISSING = """
### ❌ Patch Not Available

GitHub did not provide a patch for PR #{source_pr}, unable to cherry-pick it.


""" + FOOTER

UNAUTHORIZED = """
### 🔒 Insufficient Permissions

* User **@{user}** is not allowed to request cherry-picks
* Only members of `{owner}`, collaborators of `{repo}` and users invited with
  `/cherrypick-invite <user>` can use this command

Please request assistance from a repository maintainer.


""" + FOOTER

INVITE_MARKER = "<!-- cherrypicker-invite: {user} -->"

INVITE_SUCCESS = """
### 📨 Invitation Recorded

{users} may now request cherry-picks on this pull request with `/cherrypick <branch>`.
{markers}

""" + FOOTER
