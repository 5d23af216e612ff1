"""GitHub REST client producing repository snapshots and reference commits."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar

import httpx

from maintainer_brief import __version__
from maintainer_brief.config import GitHubSettings
from maintainer_brief.jobs.models import AnalysisDepth
from maintainer_brief.pipeline.contracts import (
    AccessDeniedError,
    CommitInfo,
    IssueInfo,
    PullRequestInfo,
    ReleaseInfo,
    RepositoryNotFoundError,
    RepositorySnapshot,
    TransientCollaboratorError,
)
from maintainer_brief.resilience import RetryPolicy, TokenBucket, is_transient_error
from maintainer_brief.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

GOOD_FIRST_ISSUE_LABELS: tuple[str, ...] = ("good first issue", "help wanted", "beginner friendly")
CONTRIBUTING_PATHS: tuple[str, ...] = ("CONTRIBUTING.md", "CONTRIBUTING", ".github/CONTRIBUTING.md")
COMMIT_LIMITS = {AnalysisDepth.FAST: 50, AnalysisDepth.DEEP: 200}
PR_WINDOW_DAYS = {AnalysisDepth.FAST: 30, AnalysisDepth.DEEP: 60}
RELEASE_LIMIT = 5
ISSUES_PER_LABEL = 20
PULLS_PER_PAGE = 50
MAX_PER_PAGE = 100


@dataclass(slots=True)
class GitHubApiError(Exception):
    """Non-success response from the GitHub API."""

    message: str
    status_code: int | None = None
    rate_limited: bool = False
    rate_limit_reset: int | None = None

    def __str__(self) -> str:
        return self.message


class GitHubClient:
    """httpx wrapper for the GitHub REST endpoints used by analysis.

    Every request passes through a token bucket and the retry policy, so
    rate-limit and 5xx responses are retried with backoff before a stage fails.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        token: str = "",
        api_url: str = "https://api.github.com",
        timeout_seconds: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        rate_limiter: TokenBucket | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": f"maintainer-brief/{__version__}",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=2.0)
        self.rate_limiter = rate_limiter or TokenBucket(capacity=10, refill_rate=1.5)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: GitHubSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> GitHubClient:
        return cls(
            token=settings.token,
            api_url=settings.api_url,
            timeout_seconds=settings.timeout_seconds,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_attempts,
                base_delay=settings.retry_delay_seconds,
            ),
            rate_limiter=TokenBucket(
                capacity=settings.rate_capacity,
                refill_rate=settings.rate_per_second,
            ),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def latest_commit_sha(self, owner: str, repo: str, branch: str) -> str:
        """Head commit sha of ``branch``, the content-derived reference for fingerprints."""

        with self._translate_errors(owner=owner, repo=repo):
            data = self._get_json(f"/repos/{owner}/{repo}/commits/{branch}")
        sha = data.get("sha") if isinstance(data, dict) else None
        if not isinstance(sha, str) or not sha:
            raise RepositoryNotFoundError(f"Branch {branch!r} of {owner}/{repo} has no commits")
        return sha

    def fetch_snapshot(
        self,
        owner: str,
        repo: str,
        branch: str,
        depth: AnalysisDepth,
        ignore_paths: list[str],
    ) -> RepositorySnapshot:
        """Collect commits, merged PRs, starter issues, releases, and docs for one branch."""

        with self._translate_errors(owner=owner, repo=repo):
            metadata = self._get_json(f"/repos/{owner}/{repo}")
            commits = self._fetch_commits(
                owner,
                repo,
                branch=branch,
                limit=COMMIT_LIMITS[depth],
                ignore_paths=ignore_paths,
            )
            pull_requests = self._fetch_merged_pulls(owner, repo, days=PR_WINDOW_DAYS[depth])
            issues = self._fetch_starter_issues(owner, repo)
            releases = self._optional(
                lambda: self._fetch_releases(owner, repo),
                default=[],
                description="releases",
            )
            readme = self._optional(
                lambda: self._fetch_readme(owner, repo),
                default=None,
                description="README",
            )
            contributing = self._fetch_contributing(owner, repo)

        logger.info(
            "Fetched %s/%s@%s: %d commits, %d PRs, %d issues, %d releases",
            owner,
            repo,
            branch,
            len(commits),
            len(pull_requests),
            len(issues),
            len(releases),
        )
        return RepositorySnapshot(
            owner=owner,
            repo=repo,
            branch=branch,
            depth=depth,
            commits=commits,
            pull_requests=pull_requests,
            issues=issues,
            releases=releases,
            readme=readme,
            contributing=contributing,
            description=metadata.get("description") if isinstance(metadata, dict) else None,
            language=metadata.get("language") if isinstance(metadata, dict) else None,
        )

    def _fetch_commits(
        self,
        owner: str,
        repo: str,
        *,
        branch: str,
        limit: int,
        ignore_paths: list[str],
    ) -> list[CommitInfo]:
        ignore = compile_ignore_patterns(ignore_paths)
        listed: list[dict[str, Any]] = []
        page = 1
        while len(listed) < limit:
            per_page = min(MAX_PER_PAGE, limit - len(listed))
            batch = self._get_json(
                f"/repos/{owner}/{repo}/commits",
                params={"sha": branch, "per_page": per_page, "page": page},
            )
            if not isinstance(batch, list) or not batch:
                break
            listed.extend(item for item in batch if isinstance(item, dict))
            if len(batch) < per_page:
                break
            page += 1

        commits: list[CommitInfo] = []
        for item in listed[:limit]:
            sha = str(item.get("sha", ""))
            detail = self._get_json(f"/repos/{owner}/{repo}/commits/{sha}")
            files = [
                str(entry.get("filename", ""))
                for entry in (detail.get("files") or [] if isinstance(detail, dict) else [])
                if isinstance(entry, dict)
            ]
            commit = item.get("commit") or {}
            author = commit.get("author") or {}
            commits.append(
                CommitInfo(
                    sha=sha,
                    message=str(commit.get("message", "")),
                    author=str(author.get("name") or "Unknown"),
                    committed_at=parse_github_datetime(author.get("date")),
                    files=[name for name in files if name and not is_ignored(name, ignore)],
                ),
            )
        return commits

    def _fetch_merged_pulls(self, owner: str, repo: str, *, days: int) -> list[PullRequestInfo]:
        since = self._clock() - timedelta(days=days)
        data = self._get_json(
            f"/repos/{owner}/{repo}/pulls",
            params={
                "state": "closed",
                "sort": "updated",
                "direction": "desc",
                "per_page": PULLS_PER_PAGE,
            },
        )
        pulls: list[PullRequestInfo] = []
        for item in data if isinstance(data, list) else []:
            merged_at = parse_github_datetime(item.get("merged_at"))
            if merged_at is None or merged_at < since:
                continue
            pulls.append(
                PullRequestInfo(
                    number=int(item["number"]),
                    title=str(item.get("title", "")),
                    author=str((item.get("user") or {}).get("login") or "Unknown"),
                    merged_at=merged_at,
                    labels=_label_names(item.get("labels")),
                ),
            )
        return pulls

    def _fetch_starter_issues(self, owner: str, repo: str) -> list[IssueInfo]:
        issues: dict[int, IssueInfo] = {}
        for label in GOOD_FIRST_ISSUE_LABELS:
            data = self._optional(
                lambda label=label: self._get_json(
                    f"/repos/{owner}/{repo}/issues",
                    params={"state": "open", "labels": label, "per_page": ISSUES_PER_LABEL},
                ),
                default=[],
                description=f"issues labelled {label!r}",
            )
            for item in data if isinstance(data, list) else []:
                if "pull_request" in item:
                    continue
                number = int(item["number"])
                issues.setdefault(
                    number,
                    IssueInfo(
                        number=number,
                        title=str(item.get("title", "")),
                        labels=_label_names(item.get("labels")),
                        url=str(item.get("html_url", "")),
                    ),
                )
        return list(issues.values())

    def _fetch_releases(self, owner: str, repo: str) -> list[ReleaseInfo]:
        data = self._get_json(
            f"/repos/{owner}/{repo}/releases",
            params={"per_page": RELEASE_LIMIT},
        )
        return [
            ReleaseInfo(
                tag_name=str(item.get("tag_name", "")),
                name=str(item.get("name") or item.get("tag_name") or ""),
                body=str(item.get("body") or ""),
                published_at=parse_github_datetime(
                    item.get("published_at") or item.get("created_at"),
                ),
            )
            for item in (data if isinstance(data, list) else [])[:RELEASE_LIMIT]
        ]

    def _fetch_readme(self, owner: str, repo: str) -> str | None:
        return _decode_content(self._get_json(f"/repos/{owner}/{repo}/readme"))

    def _fetch_contributing(self, owner: str, repo: str) -> str | None:
        for path in CONTRIBUTING_PATHS:
            content = self._optional(
                lambda path=path: _decode_content(
                    self._get_json(f"/repos/{owner}/{repo}/contents/{path}"),
                ),
                default=None,
                description=path,
            )
            if content is not None:
                return content
        return None

    def _optional(self, operation: Callable[[], T], *, default: T, description: str) -> T:
        """Permanent client errors on optional data degrade to ``default``; transient ones raise."""

        try:
            return operation()
        except GitHubApiError as error:
            if is_transient_error(error):
                raise
            logger.debug("Optional GitHub data unavailable (%s): %s", description, error)
            return default

    def _get_json(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return self.retry_policy.call(
            lambda: self._send("GET", path, params=params),
            description=f"GET {path}",
        )

    def _send(self, method: str, path: str, *, params: dict[str, Any] | None = None) -> Any:
        self.rate_limiter.acquire()
        response = self._client.request(method, path, params=params)
        _raise_for_status(response)
        return response.json()

    @contextmanager
    def _translate_errors(self, *, owner: str, repo: str) -> Iterator[None]:
        try:
            yield
        except GitHubApiError as error:
            if error.status_code == 404:
                raise RepositoryNotFoundError(
                    f"Repository {owner}/{repo} not found or not accessible",
                ) from error
            if is_transient_error(error):
                raise TransientCollaboratorError(str(error)) from error
            if error.status_code in {401, 403}:
                raise AccessDeniedError(f"Access denied to {owner}/{repo}: {error}") from error
            raise
        except httpx.HTTPError as error:
            raise TransientCollaboratorError(
                f"GitHub request failed: {error or type(error).__name__}",
            ) from error


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    status = response.status_code
    remaining = response.headers.get("x-ratelimit-remaining")
    reset_header = response.headers.get("x-ratelimit-reset")
    reset = int(reset_header) if reset_header and reset_header.isdigit() else None
    if status == 429 or (status == 403 and remaining == "0"):
        raise GitHubApiError(
            f"GitHub API rate limit exceeded (HTTP {status})",
            status_code=status,
            rate_limited=True,
            rate_limit_reset=reset,
        )
    message = ""
    try:
        body = response.json()
        if isinstance(body, dict):
            message = str(body.get("message", ""))
    except ValueError:
        message = response.text[:200]
    raise GitHubApiError(
        f"GitHub API error {status} for {response.request.url.path}: {message}".rstrip(": "),
        status_code=status,
    )


def compile_ignore_patterns(patterns: list[str]) -> list[re.Pattern[str]]:
    """Translate glob patterns (``**`` spans directories, ``*`` does not) to regexes."""

    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        parts = pattern.split("**")
        translated = ".*".join(
            "[^/]*".join(re.escape(chunk) for chunk in part.split("*")) for part in parts
        )
        compiled.append(re.compile(f"^{translated}$"))
    return compiled


def is_ignored(path: str, patterns: list[re.Pattern[str]]) -> bool:
    return any(pattern.match(path) for pattern in patterns)


def parse_github_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _label_names(raw: object) -> list[str]:
    if not isinstance(raw, list):
        return []
    names: list[str] = []
    for label in raw:
        if isinstance(label, str):
            names.append(label)
        elif isinstance(label, dict) and label.get("name"):
            names.append(str(label["name"]))
    return names


def _decode_content(payload: Any) -> str | None:
    if not isinstance(payload, dict) or "content" not in payload:
        return None
    try:
        return base64.b64decode(str(payload["content"])).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return None
