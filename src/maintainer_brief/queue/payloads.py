"""Tagged payload variants carried by queue entries.

Each variant declares a ``kind`` tag. Raw JSON read back from the queue is
validated into exactly one variant by :func:`parse_payload` before any handler
sees it, so handlers only ever receive typed payloads.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

from maintainer_brief.jobs.models import AnalysisDepth, OutputTone


@dataclass(slots=True)
class PayloadValidationError(ValueError):
    """Queue payload does not match any known variant."""

    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class AnalyzeRepositoryPayload:
    """Run the analysis pipeline for one job."""

    KIND: ClassVar[str] = "analyze_repository"

    job_id: str
    repository_id: str
    owner: str
    repo: str
    branch: str
    reference_commit: str
    depth: AnalysisDepth
    tone: OutputTone
    ignore_paths: list[str] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return self.KIND

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["depth"] = self.depth.value
        payload["tone"] = self.tone.value
        return payload


@dataclass(slots=True)
class SchedulerSweepPayload:
    """Run one scheduler sweep; enqueued once per sweep slot."""

    KIND: ClassVar[str] = "scheduler_sweep"

    slot: str

    @property
    def kind(self) -> str:
        return self.KIND

    def to_dict(self) -> dict[str, Any]:
        return {"slot": self.slot}


QueuePayload = AnalyzeRepositoryPayload | SchedulerSweepPayload

PAYLOAD_KINDS: tuple[str, ...] = (AnalyzeRepositoryPayload.KIND, SchedulerSweepPayload.KIND)


def dump_payload(payload: QueuePayload) -> str:
    return json.dumps(payload.to_dict(), ensure_ascii=False, sort_keys=True)


def parse_payload(kind: str, raw: str | dict[str, Any]) -> QueuePayload:
    """Validate a stored payload into its tagged variant."""

    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as error:
            raise PayloadValidationError(f"{kind} payload is not valid JSON: {error}") from error
    else:
        data = raw
    if not isinstance(data, dict):
        raise PayloadValidationError(f"{kind} payload must be a JSON object")

    if kind == AnalyzeRepositoryPayload.KIND:
        return _parse_analyze(data)
    if kind == SchedulerSweepPayload.KIND:
        return SchedulerSweepPayload(slot=_required_str(data, "slot", kind=kind))
    raise PayloadValidationError(
        f"Unknown payload kind {kind!r}; expected one of: {', '.join(PAYLOAD_KINDS)}",
    )


def _parse_analyze(data: dict[str, Any]) -> AnalyzeRepositoryPayload:
    kind = AnalyzeRepositoryPayload.KIND
    ignore_paths = data.get("ignore_paths", [])
    if not isinstance(ignore_paths, list) or not all(isinstance(item, str) for item in ignore_paths):
        raise PayloadValidationError(f"{kind}.ignore_paths must be an array of strings")
    return AnalyzeRepositoryPayload(
        job_id=_required_str(data, "job_id", kind=kind),
        repository_id=_required_str(data, "repository_id", kind=kind),
        owner=_required_str(data, "owner", kind=kind),
        repo=_required_str(data, "repo", kind=kind),
        branch=_required_str(data, "branch", kind=kind),
        reference_commit=_required_str(data, "reference_commit", kind=kind),
        depth=_enum_value(AnalysisDepth, data, "depth", kind=kind),
        tone=_enum_value(OutputTone, data, "tone", kind=kind),
        ignore_paths=list(ignore_paths),
    )


def _required_str(data: dict[str, Any], key: str, *, kind: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PayloadValidationError(f"{kind}.{key} must be a non-empty string")
    return value


def _enum_value(enum_type: Any, data: dict[str, Any], key: str, *, kind: str) -> Any:
    value = _required_str(data, key, kind=kind)
    try:
        return enum_type(value)
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise PayloadValidationError(
            f"{kind}.{key} must be one of: {allowed}; got {value!r}",
        ) from error
