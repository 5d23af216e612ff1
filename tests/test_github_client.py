from __future__ import annotations

import base64
from datetime import UTC, datetime

import allure
import httpx
import pytest

from maintainer_brief.github.client import (
    GitHubClient,
    compile_ignore_patterns,
    is_ignored,
    parse_github_datetime,
)
from maintainer_brief.jobs.models import AnalysisDepth
from maintainer_brief.pipeline.contracts import (
    AccessDeniedError,
    RepositoryNotFoundError,
    TransientCollaboratorError,
)
from maintainer_brief.resilience import RetryPolicy, TokenBucket

pytestmark = [
    allure.epic("Collaborators"),
    allure.feature("GitHub Client"),
]

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _client(handler) -> GitHubClient:
    return GitHubClient(
        token="ghp-test",
        retry_policy=RetryPolicy(max_attempts=2, jitter=False, sleep=lambda _: None),
        rate_limiter=TokenBucket(capacity=1000, refill_rate=1000.0),
        transport=httpx.MockTransport(handler),
        clock=lambda: NOW,
    )


def _content(text: str) -> dict[str, str]:
    return {"content": base64.b64encode(text.encode()).decode(), "encoding": "base64"}


def _repository_api(request: httpx.Request) -> httpx.Response:  # noqa: PLR0911
    path = request.url.path
    if path == "/repos/acme/widgets":
        return httpx.Response(200, json={"description": "Widgets", "language": "Python"})
    if path == "/repos/acme/widgets/commits":
        return httpx.Response(
            200,
            json=[
                {
                    "sha": f"sha{index}",
                    "commit": {
                        "message": f"change {index}",
                        "author": {"name": "Dev", "date": "2026-03-01T10:00:00Z"},
                    },
                }
                for index in range(3)
            ],
        )
    if path.startswith("/repos/acme/widgets/commits/"):
        return httpx.Response(
            200,
            json={"files": [{"filename": "src/app.py"}, {"filename": "docs/guide/intro.md"}]},
        )
    if path == "/repos/acme/widgets/pulls":
        return httpx.Response(
            200,
            json=[
                {
                    "number": 7,
                    "title": "Recent",
                    "user": {"login": "alice"},
                    "merged_at": "2026-02-20T00:00:00Z",
                    "labels": [{"name": "feature"}],
                },
                {"number": 8, "title": "Closed unmerged", "merged_at": None},
                {"number": 9, "title": "Old", "merged_at": "2025-12-01T00:00:00Z"},
            ],
        )
    if path == "/repos/acme/widgets/issues":
        return httpx.Response(
            200,
            json=[
                {"number": 11, "title": "Fix typo", "labels": [{"name": "good first issue"}]},
                {"number": 12, "title": "A PR", "pull_request": {}},
            ],
        )
    if path == "/repos/acme/widgets/releases":
        return httpx.Response(200, json=[{"tag_name": "v1.0.0", "name": None, "body": "First"}])
    if path == "/repos/acme/widgets/readme":
        return httpx.Response(200, json=_content("# Widgets"))
    if path == "/repos/acme/widgets/contents/.github/CONTRIBUTING.md":
        return httpx.Response(200, json=_content("Be kind"))
    return httpx.Response(404, json={"message": "Not Found"})


def test_fetch_snapshot_collects_activity() -> None:
    client = _client(_repository_api)

    snapshot = client.fetch_snapshot("acme", "widgets", "main", AnalysisDepth.FAST, ["docs/**"])
    client.close()

    assert snapshot.full_name == "acme/widgets"
    assert snapshot.description == "Widgets"
    assert [commit.sha for commit in snapshot.commits] == ["sha0", "sha1", "sha2"]
    assert snapshot.commits[0].files == ["src/app.py"]
    assert snapshot.commits[0].committed_at == datetime(2026, 3, 1, 10, 0, tzinfo=UTC)
    assert [pr.number for pr in snapshot.pull_requests] == [7]
    assert snapshot.pull_requests[0].labels == ["feature"]
    assert [issue.number for issue in snapshot.issues] == [11]
    assert snapshot.releases[0].name == "v1.0.0"
    assert snapshot.readme == "# Widgets"
    assert snapshot.contributing == "Be kind"


def test_commit_listing_is_paginated_up_to_depth_limit() -> None:
    pages: list[tuple[str, str]] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/repos/acme/widgets/commits":
            page = request.url.params["page"]
            per_page = int(request.url.params["per_page"])
            pages.append((page, str(per_page)))
            start = (int(page) - 1) * 100
            return httpx.Response(
                200,
                json=[{"sha": f"s{start + n}", "commit": {}} for n in range(per_page)],
            )
        return _repository_api(request)

    snapshot = _client(_handler).fetch_snapshot("acme", "widgets", "main", AnalysisDepth.DEEP, [])

    assert pages == [("1", "100"), ("2", "100")]
    assert len(snapshot.commits) == 200


def test_latest_commit_sha_reads_branch_head() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/acme/widgets/commits/main"
        assert request.headers["Authorization"] == "Bearer ghp-test"
        return httpx.Response(200, json={"sha": "0123456789abcdef0123456789abcdef01234567"})

    assert _client(_handler).latest_commit_sha("acme", "widgets", "main") == (
        "0123456789abcdef0123456789abcdef01234567"
    )


def test_missing_repository_maps_to_not_found() -> None:
    client = _client(lambda request: httpx.Response(404, json={"message": "Not Found"}))

    with pytest.raises(RepositoryNotFoundError):
        client.fetch_snapshot("acme", "missing", "main", AnalysisDepth.FAST, [])


def test_exhausted_rate_limit_is_retried_then_reported_as_transient() -> None:
    calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(
            403,
            headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1772442000"},
            json={"message": "API rate limit exceeded"},
        )

    with pytest.raises(TransientCollaboratorError, match="rate limit exceeded"):
        _client(_handler).fetch_snapshot("acme", "widgets", "main", AnalysisDepth.FAST, [])
    assert len(calls) == 2


def test_forbidden_without_rate_limit_is_access_denied() -> None:
    client = _client(lambda request: httpx.Response(403, json={"message": "Forbidden"}))

    with pytest.raises(AccessDeniedError):
        client.latest_commit_sha("acme", "widgets", "main")


def test_network_failure_is_transient() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientCollaboratorError):
        _client(_handler).latest_commit_sha("acme", "widgets", "main")


@pytest.mark.parametrize(
    ("path", "ignored"),
    [
        ("docs/index.md", True),
        ("docs/guide/intro.md", True),
        ("src/docs/index.md", False),
        ("package-lock.json", True),
        ("web/package-lock.json", False),
        ("dist/bundle.min.js", True),
        ("src/app.py", False),
    ],
)
def test_ignore_globs(path: str, ignored: bool) -> None:
    patterns = compile_ignore_patterns(["docs/**", "package-lock.json", "dist/*.js"])

    assert is_ignored(path, patterns) is ignored


def test_parse_github_datetime_handles_zulu_and_garbage() -> None:
    assert parse_github_datetime("2026-03-01T10:00:00Z") == datetime(2026, 3, 1, 10, tzinfo=UTC)
    assert parse_github_datetime("yesterday") is None
    assert parse_github_datetime(None) is None
