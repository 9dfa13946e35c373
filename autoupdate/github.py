import time
import logging
from typing import Any, Dict, Optional, List
from urllib.parse import quote
import httpx

from .errors import GitHubAPIError
from .metrics import (
    github_api_requests_total,
    github_api_latency_seconds,
    github_rate_limit_remaining,
)
from .models import MergeOptions, PullRequest

logger = logging.getLogger(__name__)

USER_AGENT = "autoupdate-bot/1.0"


def _seg(value: Any) -> str:
    # branch names may hold slashes and compare takes owner:branch labels
    return quote(str(value), safe="/:")


def _safe_url(url: str) -> str:
    try:
        u = httpx.URL(url)
        # remove query to avoid leaking params
        return str(u.copy_with(query=None))
    except Exception:
        return url.split("?", 1)[0]


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except Exception:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return str(payload)


class GitHubClient:
    """Resource-shaped wrapper over the GitHub REST endpoints the updater uses.

    Lookups return parsed JSON; any >= 400 response raises GitHubAPIError so
    callers decide how to recover.
    """

    def __init__(self, authenticator, settings):
        self.auth = authenticator
        self.base_url = settings.github_api_url
        self.max_attempts = settings.http_max_attempts
        self.backoff_base_seconds = settings.backoff_base_seconds
        self.backoff_factor = settings.backoff_factor
        self.max_backoff_seconds = settings.max_backoff_seconds

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"token {self.auth.get_token()}",
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }

    def request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None, data: Optional[Any] = None
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        endpoint = f"{method.upper()} {path if path.startswith('/') else '/' + path}"
        # Mutations are never replayed here; the merge executor owns that policy.
        idempotent = method.upper() == "GET"

        attempts = 0
        while True:
            attempts += 1
            start = time.perf_counter()
            exc: Optional[Exception] = None
            resp: Optional[httpx.Response] = None
            logger.debug(
                "github.request: method=%s path=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                attempts,
            )
            try:
                resp = httpx.request(method, url, headers=self._headers(), params=params, json=data, timeout=60)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                exc = e
            duration = time.perf_counter() - start
            status_label = str(resp.status_code) if resp is not None else "exc"
            github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
            github_api_requests_total.labels(endpoint=endpoint, status=status_label).inc()
            if resp is not None:
                self._record_rate_limit(resp)
                logger.debug(
                    "github.response: method=%s path=%s status=%s duration_ms=%d attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    resp.status_code,
                    int(duration * 1000),
                    attempts,
                )
            else:
                logger.debug(
                    "github.response_error: method=%s path=%s error=%s duration_ms=%d attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    exc,
                    int(duration * 1000),
                    attempts,
                )
            retryable = idempotent and (exc is not None or (resp is not None and resp.status_code >= 500))
            if not retryable or attempts >= self.max_attempts:
                if exc is not None:
                    raise GitHubAPIError(None, f"{endpoint} failed: {exc}") from exc
                return resp  # type: ignore
            # sleep with exponential backoff
            sleep_s = min(
                self.backoff_base_seconds * (self.backoff_factor ** (attempts - 1)),
                self.max_backoff_seconds,
            )
            logger.debug(
                "github.retry: method=%s path=%s sleep_seconds=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                sleep_s,
                attempts,
            )
            time.sleep(sleep_s)

    def _record_rate_limit(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return
        try:
            github_rate_limit_remaining.set(int(remaining))
        except ValueError:
            pass

    def _checked(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        r = self.request(method, path, **kwargs)
        if r.status_code >= 400:
            raise GitHubAPIError(r.status_code, _error_message(r))
        return r

    # --- Convenience methods ---
    def compare_commits(self, owner: str, repo: str, base: str, head: str) -> Dict[str, Any]:
        r = self._checked("GET", f"/repos/{_seg(owner)}/{_seg(repo)}/compare/{_seg(base)}...{_seg(head)}")
        return r.json()

    def get_branch(self, owner: str, repo: str, branch: str) -> Dict[str, Any]:
        r = self._checked("GET", f"/repos/{_seg(owner)}/{_seg(repo)}/branches/{_seg(branch)}")
        return r.json()

    def list_pulls(self, owner: str, repo: str, base: str) -> List[PullRequest]:
        """Open pull requests against base, most recently updated first."""
        prs: List[PullRequest] = []
        page = 1
        while True:
            params = {
                "base": base,
                "state": "open",
                "sort": "updated",
                "direction": "desc",
                "per_page": 100,
                "page": page,
            }
            r = self._checked("GET", f"/repos/{_seg(owner)}/{_seg(repo)}/pulls", params=params)
            batch = r.json()
            prs.extend(PullRequest.model_validate(p) for p in batch)
            if len(batch) < 100:
                break
            page += 1
        return prs

    def get_pull(self, owner: str, repo: str, number: int) -> PullRequest:
        r = self._checked("GET", f"/repos/{_seg(owner)}/{_seg(repo)}/pulls/{number}")
        return PullRequest.model_validate(r.json())

    def merge_branches(self, opts: MergeOptions) -> int:
        """Merge opts.head into opts.base. Returns 201 (merge commit) or 204 (nothing to merge)."""
        r = self._checked("POST", f"/repos/{_seg(opts.owner)}/{_seg(opts.repo)}/merges", data=opts.payload())
        return r.status_code

    def update_issue_labels(self, owner: str, repo: str, number: int, labels: List[str]) -> None:
        self._checked("PUT", f"/repos/{_seg(owner)}/{_seg(repo)}/issues/{number}/labels", data={"labels": labels})

    def create_issue_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        self._checked("POST", f"/repos/{_seg(owner)}/{_seg(repo)}/issues/{number}/comments", data={"body": body})
