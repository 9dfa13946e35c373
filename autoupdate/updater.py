import re
import time
import logging
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .errors import AutoUpdateError, ConfigError, GitHubAPIError, MergeConflictError, RetriesExhaustedError
from .github import GitHubClient
from .metrics import (
    branch_updates_total,
    events_routed_total,
    merge_attempts_total,
    merge_retries_total,
    pull_requests_evaluated_total,
)
from .models import MergeOptions, PullRequest, branch_from_ref, split_repository
from .output import ActionOutput

logger = logging.getLogger(__name__)

CONFLICTED_OUTPUT = "conflicted"
AUTH_ERROR_PATTERN = re.compile(r"authorization token|token.*missing|requires authentication|bad credentials", re.I)
MERGE_SUCCESS_STATUSES = (200, 201, 204)

DEFAULT_CONFLICT_COMMENT = (
    "This pull request could not be updated automatically: merging `{head}` into `{base}` "
    "produced a merge conflict. Please resolve the conflict manually."
)


class MergeState(str, Enum):
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    CROSS_OWNER_DENIED = "cross_owner_denied"
    AUTH_ERROR = "auth_error"
    CONFLICTED = "conflicted"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRIES_EXHAUSTED = "retries_exhausted"


class AutoUpdater:
    """Routes one triggering event to the open pull requests it affects and
    merges their base branch into their head branch when they are behind."""

    def __init__(self, config, client: GitHubClient, event=None, output: Optional[ActionOutput] = None):
        self.config = config
        self.client = client
        self.event = event
        self.output = output or ActionOutput()

    # --- Event routing ---
    def route(self, event=None) -> int:
        """Dispatch on the event variant; returns the number of pull requests updated."""
        if event is not None:
            self.event = event
        handlers = {
            "push": self.handle_push,
            "workflow_dispatch": self.handle_workflow_dispatch,
            "workflow_run": self.handle_workflow_run,
            "pull_request": self.handle_pull_request,
            "schedule": self.handle_schedule,
        }
        kind = self.event.kind
        events_routed_total.labels(event=kind).inc()
        return handlers[kind]()

    def handle_push(self) -> int:
        ref = self.event.ref
        repository = self.event.repository
        logger.debug("Handling push event on ref '%s'", ref)
        return self.pulls(ref, repository.name, repository.owner.login, repository.owner.login)

    def handle_workflow_dispatch(self) -> int:
        ref = self.event.ref
        repository = self.event.repository
        logger.debug("Handling workflow_dispatch event on ref '%s'", ref)
        return self.pulls(ref, repository.name, repository.owner.login, repository.owner.login)

    def handle_workflow_run(self) -> int:
        run = self.event.workflow_run
        repository = self.event.repository
        owner = repository.owner.name or repository.owner.login
        if run.event not in ("push", "pull_request"):
            logger.error("workflow_run event triggered by unsupported event '%s', skipping", run.event)
            return 0
        branch = run.head_branch
        if not branch:
            logger.info("workflow_run event has no head branch, skipping")
            return 0
        logger.debug("Handling workflow_run event triggered by '%s' on '%s'", run.event, branch)
        return self.pulls(f"refs/heads/{branch}", repository.name, owner, owner)

    def handle_pull_request(self) -> int:
        pull = self.event.pull_request
        if pull.head.repo is None:
            logger.error("Pull request head repo is null, skipping update.")
            return 0
        source_owner = self.event.repository.owner.login
        if not source_owner and pull.base.repo is not None:
            source_owner = pull.base.repo.owner.login
        logger.debug("Handling pull_request event (action=%s) for PR #%s", self.event.action, pull.number)
        updated = self.update(source_owner or "", pull)
        if updated:
            logger.info("Auto update complete, pull request #%s was updated", pull.number)
        else:
            logger.info("Auto update complete, no changes were made to pull request #%s", pull.number)
        return int(updated)

    def handle_schedule(self) -> int:
        ref = self.config.github_ref()
        repository = self.config.github_repository()
        if ref is None:
            raise ConfigError("GITHUB_REF environment variable is not set")
        if repository is None:
            raise ConfigError("GITHUB_REPOSITORY environment variable is not set")
        branch = branch_from_ref(ref)
        if branch is None:
            raise ConfigError(f"GITHUB_REF '{ref}' does not reference a branch (expected refs/heads/<branch>)")
        parts = split_repository(repository)
        if parts is None:
            logger.error("GITHUB_REPOSITORY '%s' is not in the form owner/repo, skipping", repository)
            return 0
        owner, repo = parts
        logger.debug("Handling schedule event for %s/%s on '%s'", owner, repo, branch)
        return self.pulls(ref, repo, owner, owner)

    def pulls(self, ref: str, repo_name: Optional[str], owner: Optional[str], source_owner: Optional[str]) -> int:
        """Update every open pull request whose base is the branch named by ref."""
        branch = branch_from_ref(ref)
        if branch is None:
            logger.debug("Ref '%s' is not a branch, skipping", ref)
            return 0
        if not owner:
            logger.error("Invalid repository owner provided (owner=%r repo=%r), skipping", owner, repo_name)
            return 0
        if not repo_name:
            logger.error("Invalid repository name provided (owner=%r repo=%r), skipping", owner, repo_name)
            return 0

        logger.debug("Fetching pull requests for %s/%s against '%s'", owner, repo_name, branch)
        candidates = self.client.list_pulls(owner, repo_name, branch)
        updated = 0
        for pull in candidates:
            if self.update(source_owner or owner, pull):
                updated += 1
        logger.info(
            "Auto update complete, %s of %s pull request(s) that point to branch '%s' were updated",
            updated,
            len(candidates),
            branch,
        )
        return updated

    # --- Per pull request orchestration ---
    def update(self, source_owner: str, pull: PullRequest) -> bool:
        logger.info("Processing pull request #%s", pull.number)
        if not self.pr_needs_update(pull):
            branch_updates_total.labels(result="skipped").inc()
            return False

        if self.config.dry_run():
            logger.info(
                "Would have merged '%s' into '%s' for PR #%s, skipping (dry run)", pull.base.ref, pull.head.ref, pull.number
            )
            branch_updates_total.labels(result="dry_run").inc()
            return True

        head_repo = pull.head.repo
        if head_repo is None:
            logger.error("Pull request #%s head repository is missing, skipping", pull.number)
            return False

        merge_msg = self.config.merge_msg()
        opts = MergeOptions(
            owner=head_repo.owner.login or "",
            repo=head_repo.name or "",
            # The PR's base is merged into the PR's head, so base/head swap here.
            base=pull.head.ref,
            head=pull.base.ref,
            commit_message=merge_msg or None,
        )
        try:
            updated = self.merge(source_owner, pull.number, opts)
        except Exception as e:
            logger.error("Caught error running merge for PR #%s, skipping and continuing with remaining PRs", pull.number)
            branch_updates_total.labels(result="failed").inc()
            self.output.set_failed(str(e))
            return False
        branch_updates_total.labels(result="updated" if updated else "not_updated").inc()
        return updated

    # --- Eligibility ---
    def pr_needs_update(self, pull: PullRequest) -> bool:
        ok, reason = self._check_eligibility(pull)
        if ok:
            logger.info("PR #%s needs an update: %s", pull.number, reason)
        else:
            logger.info("PR #%s does not need an update: %s", pull.number, reason)
        pull_requests_evaluated_total.labels(result="eligible" if ok else "ineligible").inc()
        return ok

    def _check_eligibility(self, pull: PullRequest) -> Tuple[bool, str]:
        # Order matters: each check gates the config reads and API calls after it.
        if pull.merged:
            return False, "already_merged"
        if pull.state != "open":
            return False, f"not_open:{pull.state}"
        head_repo = pull.head.repo
        if head_repo is None:
            return False, "head_repo_deleted"

        ready_state = self.config.pull_request_ready_state()
        if ready_state == "draft" and not pull.draft:
            return False, "not_draft"
        if ready_state == "ready_for_review" and pull.draft:
            return False, "draft"

        try:
            comparison = self.client.compare_commits(
                head_repo.owner.login or "",
                head_repo.name or "",
                pull.head.label or pull.head.ref,
                pull.base.label or pull.base.ref,
            )
        except AutoUpdateError as e:
            logger.error("Failed to compare commits for PR #%s: %s", pull.number, e)
            return False, "compare_failed"
        behind_by = comparison.get("behind_by") or 0
        if behind_by == 0:
            return False, "up_to_date"
        logger.debug("PR #%s is %s commit(s) behind '%s'", pull.number, behind_by, pull.base.ref)

        excluded = set(self.config.excluded_labels())
        if excluded:
            hits = [name for name in pull.label_names() if name in excluded]
            if hits:
                return False, f"excluded_label:{hits[0]}"

        mode = self.config.pull_request_filter()
        if mode == "all":
            return True, "filter_all"
        if mode == "labelled":
            wanted = set(self.config.pull_request_labels())
            if not wanted:
                logger.warning("Filter is 'labelled' but no pull request labels are configured")
                return False, "no_labels_configured"
            for name in pull.label_names():
                if name in wanted:
                    return True, f"label:{name}"
            return False, "missing_label"
        if mode == "protected":
            return self._check_protected(pull)
        if mode == "auto_merge":
            if pull.auto_merge is not None and pull.auto_merge.enabled:
                return True, "auto_merge_enabled"
            return False, "auto_merge_disabled"
        return False, f"unknown_filter:{mode}"

    def _check_protected(self, pull: PullRequest) -> Tuple[bool, str]:
        base_repo = pull.base.repo
        if base_repo is None:
            return False, "base_repo_missing"
        try:
            branch = self.client.get_branch(base_repo.owner.login or "", base_repo.name or "", pull.base.ref)
        except AutoUpdateError as e:
            logger.error("Failed to fetch branch '%s' for PR #%s: %s", pull.base.ref, pull.number, e)
            return False, "branch_lookup_failed"
        if branch.get("protected") is True:
            return True, "protected_branch"
        return False, "unprotected_branch"

    # --- Merge execution ---
    def merge(
        self,
        source_owner: str,
        pr_number: int,
        opts: MergeOptions,
        set_output: Optional[Callable[[str, bool], None]] = None,
    ) -> bool:
        """Merge opts.head into opts.base, retrying failed attempts.

        Total attempts are retry_count + 1 with a constant retry_sleep (ms)
        between them. Returns True when the branch was merged or already up to
        date. Raises RetriesExhaustedError when every attempt failed under the
        "fail" conflict action.
        """
        if set_output is None:
            set_output = self.output.set_output
        retry_count = self.config.retry_count()
        retry_sleep_ms = self.config.retry_sleep()

        attempts = 0
        state = MergeState.ATTEMPTING
        last_error: Optional[Exception] = None
        while state in (MergeState.ATTEMPTING, MergeState.RETRY_SCHEDULED):
            if state is MergeState.RETRY_SCHEDULED:
                merge_retries_total.inc()
                logger.info(
                    "Branch update for PR #%s failed, will retry in %sms, retry #%s of %s",
                    pr_number,
                    retry_sleep_ms,
                    attempts,
                    retry_count,
                )
                time.sleep(retry_sleep_ms / 1000.0)
            attempts += 1
            logger.info("Attempting branch update for PR #%s (attempt %s)", pr_number, attempts)
            state, last_error = self._attempt(source_owner, pr_number, opts, set_output)
            if state is MergeState.RETRY_SCHEDULED and attempts > retry_count:
                state = MergeState.RETRIES_EXHAUSTED

        logger.debug("Branch update for PR #%s finished: state=%s attempts=%s", pr_number, state.value, attempts)
        if state is MergeState.SUCCEEDED:
            return True
        if state is MergeState.RETRIES_EXHAUSTED:
            raise RetriesExhaustedError(pr_number, attempts, last_error) from last_error
        return False

    def _attempt(
        self, source_owner: str, pr_number: int, opts: MergeOptions, set_output: Callable[[str, bool], None]
    ) -> Tuple[MergeState, Optional[Exception]]:
        try:
            status = self.client.merge_branches(opts)
            if status not in MERGE_SUCCESS_STATUSES:
                raise GitHubAPIError(status, f"unexpected merge response status {status}")
        except AutoUpdateError as e:
            return self._on_merge_error(source_owner, pr_number, opts, e, set_output)

        if status == 204:
            logger.info("Branch update not required for PR #%s, already up to date", pr_number)
        else:
            logger.info("Branch update succeeded for PR #%s", pr_number)
        merge_attempts_total.labels(result="success").inc()
        set_output(CONFLICTED_OUTPUT, False)
        return MergeState.SUCCEEDED, None

    def _on_merge_error(
        self,
        source_owner: str,
        pr_number: int,
        opts: MergeOptions,
        error: AutoUpdateError,
        set_output: Callable[[str, bool], None],
    ) -> Tuple[MergeState, Optional[Exception]]:
        # token refresh failures carry no status and are judged by message alone
        status = getattr(error, "status", None)
        message = getattr(error, "message", None) or str(error)
        if status == 403 and opts.owner.lower() != (source_owner or "").lower():
            logger.error(
                "Could not update PR #%s: the branch lives in %s/%s, which this run cannot push to (forked PR). "
                "Not retrying.",
                pr_number,
                opts.owner,
                opts.repo,
            )
            merge_attempts_total.labels(result="cross_owner").inc()
            set_output(CONFLICTED_OUTPUT, False)
            return MergeState.CROSS_OWNER_DENIED, error

        if status == 401 or AUTH_ERROR_PATTERN.search(message):
            logger.error(
                "Authorization error updating PR #%s: %s. Check that the token has the required scopes.",
                pr_number,
                message,
            )
            merge_attempts_total.labels(result="auth_error").inc()
            set_output(CONFLICTED_OUTPUT, False)
            return MergeState.AUTH_ERROR, error

        merge_attempts_total.labels(result="conflict").inc()
        action = self.config.merge_conflict_action()
        if action == "ignore":
            logger.info("Merge conflict detected for PR #%s, skipping update (%s)", pr_number, error)
            return MergeState.CONFLICTED, error
        if action == "label":
            logger.info("Merge conflict detected for PR #%s, labelling (%s)", pr_number, error)
            self._label_conflict(pr_number, opts)
            return MergeState.CONFLICTED, error

        logger.error("Merge conflict error trying to update branch for PR #%s: %s", pr_number, error)
        conflict = MergeConflictError(pr_number, str(error))
        conflict.__cause__ = error
        return MergeState.RETRY_SCHEDULED, conflict

    def _label_conflict(self, pr_number: int, opts: MergeOptions) -> None:
        conflict_label = self.config.merge_conflict_label()
        pull = self.client.get_pull(opts.owner, opts.repo, pr_number)
        current = pull.label_names()
        if conflict_label in current:
            logger.info("PR #%s already has the '%s' label", pr_number, conflict_label)
            return
        stale = set(self.config.pull_request_labels())
        labels: List[str] = [name for name in current if name not in stale]
        labels.append(conflict_label)
        self.client.update_issue_labels(opts.owner, opts.repo, pr_number, labels)
        body = self.config.conflict_msg() or DEFAULT_CONFLICT_COMMENT.format(head=opts.head, base=opts.base)
        self.client.create_issue_comment(opts.owner, opts.repo, pr_number, body)
        logger.info("Labelled PR #%s with '%s' and left a comment", pr_number, conflict_label)
