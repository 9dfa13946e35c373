import json
import time
import httpx
import pytest

from autoupdate.errors import GitHubAPIError
from autoupdate.github import GitHubClient
from autoupdate.models import MergeOptions


class DummyResponse:
    def __init__(self, status_code: int, headers: dict | None = None, body=None):
        self.status_code = status_code
        self.headers = headers or {}
        self._json = body if body is not None else {}

    def json(self):
        return self._json

    @property
    def text(self):
        return json.dumps(self._json)


class StaticAuth:
    def get_token(self):
        return "t0ken"


class FakeSettings:
    github_api_url = "https://api.github.test"
    http_max_attempts = 3
    backoff_base_seconds = 1.0
    backoff_factor = 2.0
    max_backoff_seconds = 30


@pytest.fixture
def requests(monkeypatch):
    """Queue of responses served to httpx.request; records each call."""
    state = {"responses": [], "calls": []}

    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        state["calls"].append({"method": method, "url": url, "headers": headers, "params": params, "json": json})
        resp = state["responses"].pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp

    monkeypatch.setattr(httpx, "request", fake_request)
    monkeypatch.setattr(time, "sleep", lambda s: None)
    return state


def client():
    return GitHubClient(StaticAuth(), FakeSettings())


def test_compare_commits(requests):
    requests["responses"].append(DummyResponse(200, body={"behind_by": 3}))
    assert client().compare_commits("octo", "repo", "develop", "master") == {"behind_by": 3}
    call = requests["calls"][0]
    assert call["method"] == "GET"
    assert call["url"] == "https://api.github.test/repos/octo/repo/compare/develop...master"
    assert call["headers"]["Authorization"] == "token t0ken"


def test_branch_names_are_quoted_in_paths(requests):
    requests["responses"].append(DummyResponse(200, body={"protected": False}))
    requests["responses"].append(DummyResponse(200, body={"behind_by": 0}))
    client().get_branch("octo", "repo", "feature/fix#1?x=%")
    client().compare_commits("octo", "repo", "fork:release/1.0", "octo:main")
    assert requests["calls"][0]["url"].endswith("/repos/octo/repo/branches/feature/fix%231%3Fx%3D%25")
    assert requests["calls"][1]["url"].endswith("/compare/fork:release/1.0...octo:main")


def test_lookup_error_raises_with_message(requests):
    requests["responses"].append(DummyResponse(404, body={"message": "Not Found"}))
    with pytest.raises(GitHubAPIError) as excinfo:
        client().get_branch("octo", "repo", "main")
    assert excinfo.value.status == 404
    assert excinfo.value.message == "Not Found"


def test_list_pulls_paginates(requests):
    first = [{"number": i} for i in range(100)]
    requests["responses"].extend([DummyResponse(200, body=first), DummyResponse(200, body=[{"number": 100}])])
    pulls = client().list_pulls("octo", "repo", "main")
    assert [p.number for p in pulls] == list(range(101))
    params = requests["calls"][0]["params"]
    assert params["base"] == "main"
    assert params["state"] == "open"
    assert params["sort"] == "updated"
    assert params["direction"] == "desc"
    assert requests["calls"][1]["params"]["page"] == 2


def test_get_retries_server_errors(requests):
    requests["responses"].extend([DummyResponse(502), DummyResponse(200, body={"protected": True})])
    assert client().get_branch("octo", "repo", "main") == {"protected": True}
    assert len(requests["calls"]) == 2


def test_get_retries_transport_errors_then_raises(requests):
    requests["responses"].extend([httpx.ConnectError("down")] * 3)
    with pytest.raises(GitHubAPIError) as excinfo:
        client().get_branch("octo", "repo", "main")
    assert excinfo.value.status is None
    assert len(requests["calls"]) == 3


def test_merge_is_never_retried_by_transport(requests):
    requests["responses"].append(DummyResponse(500, body={"message": "Server Error"}))
    opts = MergeOptions(owner="octo", repo="repo", base="develop", head="master")
    with pytest.raises(GitHubAPIError):
        client().merge_branches(opts)
    assert len(requests["calls"]) == 1


def test_merge_branches_payload(requests):
    requests["responses"].append(DummyResponse(204))
    opts = MergeOptions(owner="fork", repo="repo", base="develop", head="master", commit_message="sync")
    assert client().merge_branches(opts) == 204
    call = requests["calls"][0]
    assert call["method"] == "POST"
    assert call["url"] == "https://api.github.test/repos/fork/repo/merges"
    assert call["json"] == {"base": "develop", "head": "master", "commit_message": "sync"}


def test_merge_conflict_raises(requests):
    requests["responses"].append(DummyResponse(409, body={"message": "Merge conflict"}))
    opts = MergeOptions(owner="octo", repo="repo", base="develop", head="master")
    with pytest.raises(GitHubAPIError) as excinfo:
        client().merge_branches(opts)
    assert excinfo.value.status == 409
    assert str(excinfo.value) == "409: Merge conflict"


def test_issue_label_and_comment_calls(requests):
    requests["responses"].extend([DummyResponse(200, body=[]), DummyResponse(201, body={})])
    c = client()
    c.update_issue_labels("octo", "repo", 7, ["baz", "conflict"])
    c.create_issue_comment("octo", "repo", 7, "hello")
    labels_call, comment_call = requests["calls"]
    assert labels_call["method"] == "PUT"
    assert labels_call["url"].endswith("/repos/octo/repo/issues/7/labels")
    assert labels_call["json"] == {"labels": ["baz", "conflict"]}
    assert comment_call["method"] == "POST"
    assert comment_call["json"] == {"body": "hello"}


def test_rate_limit_header_recorded(requests):
    from autoupdate.metrics import REGISTRY

    requests["responses"].append(DummyResponse(200, headers={"X-RateLimit-Remaining": "42"}, body={"behind_by": 0}))
    client().compare_commits("octo", "repo", "a", "b")
    assert REGISTRY.get_sample_value("github_rate_limit_remaining") == 42
