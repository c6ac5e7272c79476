"""Rubric criterion records and the file extractor that produces them."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol


class CriteriaParseError(ValueError):
    """Raised when a rubric file cannot be read as JSON or Markdown criteria."""


@dataclass(frozen=True, slots=True)
class Criterion:
    """One grading rule; ``title`` is the stable criterion id."""

    title: str
    counter: str = ""
    score: int = 0
    required: bool = False
    rubric: str = ""
    held_out_test: str = ""


class CriteriaExtractor(Protocol):
    def parse(self, path: str | Path) -> list[Criterion]: ...


_SECTION_RE = re.compile(r"^\s*###\s*#\d+:\s*[a-fA-F0-9-]{36}", re.MULTILINE)
_HEADER_RE = re.compile(r"^\s*###\s*#(\d+):\s*([a-fA-F0-9-]{36})", re.MULTILINE)
_SCORE_RE = re.compile(r"\*\*Score\*\*:\s*(\d+)")
_REQUIRED_RE = re.compile(r"\*\*Required\*\*:\s*(true|false)")
_CRITERION_RE = re.compile(r"\*\*Criterion\*\*:\s*(.*?)(?:\n\n|$)", re.DOTALL)
_HELD_OUT_RE = re.compile(r"\*\*Held-out tests\*\*:\n```(?:bash)?\n(.*?)\n```", re.DOTALL)


def _first_test_command(forms: Any) -> str:
    if not isinstance(forms, dict):
        return ""
    for form in forms.values():
        if isinstance(form, dict):
            command = form.get("criterion_test_command")
            if isinstance(command, str) and command:
                return command
    return ""


def parse_json_criteria(text: str) -> list[Criterion]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        msg = f"failed to decode JSON rubric: {exc}"
        raise CriteriaParseError(msg) from exc
    if not isinstance(payload, list):
        msg = "JSON rubric must be a list of criteria"
        raise CriteriaParseError(msg)
    criteria: list[Criterion] = []
    for index, item in enumerate(payload, start=1):
        if not isinstance(item, dict):
            msg = f"JSON rubric item {index} is not an object"
            raise CriteriaParseError(msg)
        try:
            score = int(item.get("score") or 0)
        except (TypeError, ValueError) as exc:
            msg = f"JSON rubric item {index} has a non-integer score"
            raise CriteriaParseError(msg) from exc
        criterion = Criterion(
            title=str(item.get("rubricItemId") or ""),
            counter=str(index),
            score=score,
            required=bool(item.get("required", False)),
            rubric=str(item.get("criterion") or ""),
            held_out_test=_first_test_command(item.get("forms")),
        )
        if criterion.title and criterion.held_out_test:
            criteria.append(criterion)
    return criteria


def parse_markdown_criteria(text: str) -> list[Criterion]:
    starts = [match.start() for match in _SECTION_RE.finditer(text)]
    if not starts:
        msg = "no criteria sections found"
        raise CriteriaParseError(msg)
    bounds = zip(starts, [*starts[1:], len(text)], strict=True)
    criteria: list[Criterion] = []
    for start, end in bounds:
        section = text[start:end]
        header = _HEADER_RE.search(section)
        if header is None:
            continue
        score_match = _SCORE_RE.search(section)
        required_match = _REQUIRED_RE.search(section)
        rubric_match = _CRITERION_RE.search(section)
        held_out_match = _HELD_OUT_RE.search(section)
        criterion = Criterion(
            title=header.group(2).strip(),
            counter=header.group(1).strip(),
            score=int(score_match.group(1)) if score_match else 0,
            required=bool(required_match and required_match.group(1) == "true"),
            rubric=rubric_match.group(1).strip() if rubric_match else "",
            held_out_test=held_out_match.group(1).strip() if held_out_match else "",
        )
        if criterion.title and criterion.held_out_test:
            criteria.append(criterion)
    return criteria


class RubricFileExtractor:
    """Parse ``.json`` rubric exports or Markdown rubric documents."""

    def parse(self, path: str | Path) -> list[Criterion]:
        target = Path(path)
        try:
            text = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            msg = f"failed to read rubric file {target}: {exc}"
            raise CriteriaParseError(msg) from exc
        try:
            if target.suffix.lower() == ".json":
                return parse_json_criteria(text)
            return parse_markdown_criteria(text)
        except CriteriaParseError as exc:
            msg = f"{target}: {exc}"
            raise CriteriaParseError(msg) from exc


__all__ = [
    "CriteriaExtractor",
    "CriteriaParseError",
    "Criterion",
    "RubricFileExtractor",
    "parse_json_criteria",
    "parse_markdown_criteria",
]
