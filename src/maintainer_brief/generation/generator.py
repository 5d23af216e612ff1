"""Generates the fixed output set for a repository snapshot."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from maintainer_brief.generation.prompts import SYSTEM_PROMPT, build_prompt, max_tokens_for
from maintainer_brief.jobs.models import GeneratedOutput, OutputKind, OutputSources, OutputTone
from maintainer_brief.pipeline.contracts import InsufficientDataError, RepositorySnapshot

logger = logging.getLogger(__name__)

SOURCE_COMMIT_LIMIT = 50
SOURCE_PR_LIMIT = 30


class TextCompletion(Protocol):
    def complete(self, *, system: str, prompt: str, max_tokens: int) -> str:
        raise NotImplementedError


def calculate_confidence(snapshot: RepositorySnapshot, kind: OutputKind) -> float:
    """Heuristic data-quality score in ``[0, 1]``."""

    score = 0.5
    commits = len(snapshot.commits)
    if commits >= 50:
        score += 0.2
    elif commits >= 20:
        score += 0.1

    pulls = len(snapshot.pull_requests)
    if pulls >= 10:
        score += 0.1
    elif pulls >= 5:
        score += 0.05

    if snapshot.readme:
        score += 0.1
    if snapshot.contributing:
        score += 0.05

    if kind is OutputKind.GOOD_FIRST_ISSUES:
        if len(snapshot.issues) >= 5:
            score += 0.1
        elif not snapshot.issues:
            score -= 0.2
    if kind is OutputKind.RELEASE_SUMMARY and snapshot.releases:
        score += 0.05

    return round(max(0.0, min(1.0, score)), 4)


def collect_sources(snapshot: RepositorySnapshot) -> OutputSources:
    return OutputSources(
        commits=[commit.sha for commit in snapshot.commits[:SOURCE_COMMIT_LIMIT]],
        prs=[pr.number for pr in snapshot.pull_requests[:SOURCE_PR_LIMIT]],
        issues=[issue.number for issue in snapshot.issues],
    )


class SnapshotOutputGenerator:
    """Produces one output per :class:`OutputKind`, generating them concurrently."""

    def __init__(
        self,
        *,
        client: TextCompletion,
        min_commits: int = 5,
        max_workers: int = 4,
    ) -> None:
        self.client = client
        self.min_commits = min_commits
        self.max_workers = max_workers

    def generate(self, snapshot: RepositorySnapshot, tone: OutputTone) -> list[GeneratedOutput]:
        if len(snapshot.commits) < self.min_commits:
            raise InsufficientDataError(
                f"Insufficient data: need at least {self.min_commits} commits for analysis",
            )
        kinds = list(OutputKind)
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            contents = list(
                pool.map(lambda kind: self._generate_one(kind, snapshot, tone), kinds),
            )

        sources = collect_sources(snapshot)
        logger.info("Generated %d outputs for %s", len(kinds), snapshot.full_name)
        return [
            GeneratedOutput(
                kind=kind,
                content=content,
                confidence=calculate_confidence(snapshot, kind),
                sources=OutputSources(
                    commits=list(sources.commits),
                    prs=list(sources.prs),
                    issues=list(sources.issues),
                ),
            )
            for kind, content in zip(kinds, contents, strict=True)
        ]

    def _generate_one(self, kind: OutputKind, snapshot: RepositorySnapshot, tone: OutputTone) -> str:
        return self.client.complete(
            system=SYSTEM_PROMPT,
            prompt=build_prompt(kind, snapshot, tone),
            max_tokens=max_tokens_for(kind, tone),
        )
