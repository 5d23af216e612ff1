"""Prompt templates for each generated output kind."""

from __future__ import annotations

from maintainer_brief.jobs.models import OutputKind, OutputTone
from maintainer_brief.pipeline.contracts import RepositorySnapshot

SYSTEM_PROMPT = (
    "You are a technical documentation expert who analyzes GitHub repositories and creates "
    "clear, actionable summaries for maintainers and contributors."
)

_TONE_RULES = {
    OutputTone.CONCISE: "Keep it short: bullet points, no more than a few lines per section.",
    OutputTone.DETAILED: "Be thorough: explain context and reasoning for each point.",
}

_MAX_TOKENS = {
    OutputKind.MAINTAINER_BRIEF: (2000, 3000),
    OutputKind.CONTRIBUTOR_QUICKSTART: (2000, 3000),
    OutputKind.RELEASE_SUMMARY: (2000, 3000),
    OutputKind.GOOD_FIRST_ISSUES: (1500, 2500),
}

MAINTAINER_BRIEF_PROMPT = """\
Write a maintainer brief for {full_name} (branch {branch}).
Summarize what changed recently, which areas are most active, and what needs attention.

{activity}
"""

CONTRIBUTOR_QUICKSTART_PROMPT = """\
Write a contributor quickstart for {full_name}.
Explain how to set up, where the active code lives, and how changes get merged.

{activity}

README:
{readme}

CONTRIBUTING:
{contributing}
"""

RELEASE_SUMMARY_PROMPT = """\
Write a release summary for {full_name}.
Describe recent releases and unreleased changes merged since the last one.

Releases:
{releases}

{activity}
"""

GOOD_FIRST_ISSUES_PROMPT = """\
Recommend good first issues for new contributors to {full_name}.
For each, say why it suits a newcomer and which files are likely involved.

Open starter issues:
{issues}
"""


def max_tokens_for(kind: OutputKind, tone: OutputTone) -> int:
    concise, detailed = _MAX_TOKENS[kind]
    return detailed if tone is OutputTone.DETAILED else concise


def build_prompt(kind: OutputKind, snapshot: RepositorySnapshot, tone: OutputTone) -> str:
    """Render the user prompt for ``kind`` followed by the tone rule."""

    values = {
        "full_name": snapshot.full_name,
        "branch": snapshot.branch,
        "activity": _activity(snapshot),
        "readme": _excerpt(snapshot.readme),
        "contributing": _excerpt(snapshot.contributing),
        "releases": _releases(snapshot),
        "issues": _issues(snapshot),
    }
    template = {
        OutputKind.MAINTAINER_BRIEF: MAINTAINER_BRIEF_PROMPT,
        OutputKind.CONTRIBUTOR_QUICKSTART: CONTRIBUTOR_QUICKSTART_PROMPT,
        OutputKind.RELEASE_SUMMARY: RELEASE_SUMMARY_PROMPT,
        OutputKind.GOOD_FIRST_ISSUES: GOOD_FIRST_ISSUES_PROMPT,
    }[kind]
    return template.format(**values) + "\n" + _TONE_RULES[tone]


def _activity(snapshot: RepositorySnapshot) -> str:
    commit_lines = [
        f"- {commit.sha[:7]} {commit.message.splitlines()[0] if commit.message else ''} "
        f"({commit.author})"
        for commit in snapshot.commits[:50]
    ]
    pr_lines = [f"- #{pr.number} {pr.title} ({pr.author})" for pr in snapshot.pull_requests[:30]]
    return "Recent commits:\n{commits}\n\nMerged pull requests:\n{prs}".format(
        commits="\n".join(commit_lines) or "- none",
        prs="\n".join(pr_lines) or "- none",
    )


def _releases(snapshot: RepositorySnapshot) -> str:
    lines = [f"- {release.tag_name}: {release.name}" for release in snapshot.releases]
    return "\n".join(lines) or "- none"


def _issues(snapshot: RepositorySnapshot) -> str:
    lines = [
        f"- #{issue.number} {issue.title} [{', '.join(issue.labels)}]" for issue in snapshot.issues
    ]
    return "\n".join(lines) or "- none"


def _excerpt(text: str | None, limit: int = 4_000) -> str:
    if not text:
        return "(not available)"
    return text[:limit]
