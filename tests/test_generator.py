from __future__ import annotations

import json
import threading

import allure
import httpx
import openai
import pytest

from conftest import make_snapshot
from maintainer_brief.generation.generator import (
    SnapshotOutputGenerator,
    calculate_confidence,
    collect_sources,
)
from maintainer_brief.generation.openai_client import OpenAITextClient
from maintainer_brief.generation.prompts import build_prompt, max_tokens_for
from maintainer_brief.jobs.models import OutputKind, OutputTone
from maintainer_brief.pipeline.contracts import (
    AccessDeniedError,
    InsufficientDataError,
    IssueInfo,
    PullRequestInfo,
    ReleaseInfo,
    TransientCollaboratorError,
)
from maintainer_brief.resilience import RetryPolicy

pytestmark = [
    allure.epic("Analysis Pipeline"),
    allure.feature("Output Generation"),
]


class _RecordingCompletion:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def complete(self, *, system: str, prompt: str, max_tokens: int) -> str:
        with self._lock:
            self.calls.append((prompt, max_tokens))
        return f"generated:{prompt.splitlines()[0]}"


def test_generator_produces_one_output_per_kind() -> None:
    completion = _RecordingCompletion()
    snapshot = make_snapshot(commits=60)

    outputs = SnapshotOutputGenerator(client=completion).generate(snapshot, OutputTone.CONCISE)

    assert [output.kind for output in outputs] == list(OutputKind)
    assert len(completion.calls) == 4
    assert all(output.content.startswith("generated:") for output in outputs)
    assert all(len(output.sources.commits) == 50 for output in outputs)


def test_generator_refuses_sparse_snapshot() -> None:
    completion = _RecordingCompletion()

    with pytest.raises(InsufficientDataError, match="at least 5 commits"):
        SnapshotOutputGenerator(client=completion).generate(
            make_snapshot(commits=4),
            OutputTone.CONCISE,
        )
    assert completion.calls == []


def test_confidence_heuristic() -> None:
    snapshot = make_snapshot(commits=50)
    snapshot.pull_requests = [PullRequestInfo(number=n, title="pr", author="dev") for n in range(10)]
    snapshot.contributing = "How to contribute"

    assert calculate_confidence(snapshot, OutputKind.MAINTAINER_BRIEF) == pytest.approx(0.95)
    assert calculate_confidence(snapshot, OutputKind.GOOD_FIRST_ISSUES) == pytest.approx(0.75)

    snapshot.releases = [ReleaseInfo(tag_name="v1.0.0", name="v1.0.0")]
    assert calculate_confidence(snapshot, OutputKind.RELEASE_SUMMARY) == pytest.approx(1.0)

    sparse = make_snapshot(commits=5)
    sparse.readme = None
    assert calculate_confidence(sparse, OutputKind.GOOD_FIRST_ISSUES) == pytest.approx(0.3)


def test_sources_are_capped() -> None:
    snapshot = make_snapshot(commits=70)
    snapshot.pull_requests = [PullRequestInfo(number=n, title="pr", author="dev") for n in range(40)]
    snapshot.issues = [IssueInfo(number=n, title="issue") for n in range(25)]

    sources = collect_sources(snapshot)

    assert len(sources.commits) == 50
    assert sources.prs == list(range(30))
    assert sources.issues == list(range(25))


def test_prompt_and_token_budget_follow_kind_and_tone() -> None:
    snapshot = make_snapshot()

    prompt = build_prompt(OutputKind.MAINTAINER_BRIEF, snapshot, OutputTone.DETAILED)

    assert "acme/widgets" in prompt
    assert max_tokens_for(OutputKind.MAINTAINER_BRIEF, OutputTone.CONCISE) == 2000
    assert max_tokens_for(OutputKind.MAINTAINER_BRIEF, OutputTone.DETAILED) == 3000
    assert max_tokens_for(OutputKind.GOOD_FIRST_ISSUES, OutputTone.CONCISE) == 1500
    assert max_tokens_for(OutputKind.GOOD_FIRST_ISSUES, OutputTone.DETAILED) == 2500


def _completion_client(handler) -> OpenAITextClient:
    return OpenAITextClient(
        api_key="sk-test",
        base_url="https://llm.example.com/v1",
        retry_policy=RetryPolicy(max_attempts=2, jitter=False, sleep=lambda _: None),
        transport=httpx.MockTransport(handler),
    )


def _completion(content: str) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1772409600,
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "finish_reason": "stop",
                "message": {"role": "assistant", "content": content},
            },
        ],
    }


def test_completion_client_posts_chat_request() -> None:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_completion("brief text"))

    client = _completion_client(_handler)
    text = client.complete(system="sys", prompt="hello", max_tokens=123)
    client.close()

    assert text == "brief text"
    assert requests[0].url.path == "/v1/chat/completions"
    assert requests[0].headers["Authorization"] == "Bearer sk-test"
    body = json.loads(requests[0].content)
    assert body["model"] == "gpt-4o-mini"
    assert body["max_tokens"] == 123
    assert body["messages"][1] == {"role": "user", "content": "hello"}


def test_completion_client_retries_rate_limited_request() -> None:
    responses = iter(
        [
            httpx.Response(429, json={"error": {"message": "slow down"}}),
            httpx.Response(200, json=_completion("second try")),
        ],
    )
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return next(responses)

    client = _completion_client(_handler)

    assert client.complete(system="sys", prompt="hello", max_tokens=10) == "second try"
    assert len(requests) == 2


def test_completion_client_maps_errors() -> None:
    client = _completion_client(lambda request: httpx.Response(503, text="overloaded"))
    with pytest.raises(TransientCollaboratorError):
        client.complete(system="sys", prompt="hello", max_tokens=10)

    client = _completion_client(
        lambda request: httpx.Response(401, json={"error": {"message": "bad key"}}),
    )
    with pytest.raises(AccessDeniedError):
        client.complete(system="sys", prompt="hello", max_tokens=10)

    client = _completion_client(
        lambda request: httpx.Response(400, json={"error": {"message": "context too long"}}),
    )
    with pytest.raises(openai.BadRequestError):
        client.complete(system="sys", prompt="hello", max_tokens=10)
