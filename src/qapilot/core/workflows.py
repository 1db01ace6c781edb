"""Data tables that instantiate the generic engine for each workflow kind.

A workflow is a phase graph (see ``state_machine``) plus one ``PhaseDef``
per phase describing what the phase asks, which artifact fields it owns and,
for AI phases, which prompt purpose and structured shape it uses.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type

from ..domain.artifacts import (
    XPATH_TYPE_ORDER,
    ArtifactShape,
    ScenarioResult,
    TestCaseBatch,
    TicketSteps,
    TitleAnalysis,
    XPathResult,
)
from ..domain.models import ChatOption, WorkflowKind
from .state_machine import ENTRY_PHASES, PHASE_TRANSITIONS, phase_order


class PhaseKind(str, Enum):
    TEXT = "text"
    SELECT = "select"
    AI = "ai"
    QUESTIONS = "questions"
    CHECK = "check"
    REVIEW = "review"
    CONFIRM = "confirm"
    SUBMIT = "submit"
    TERMINAL = "terminal"


# (updates, warnings) produced from a validated structured block.
Applier = Callable[[ArtifactShape, Mapping[str, Any], Mapping[str, Any]], Tuple[Dict[str, Any], List[str]]]


@dataclass(frozen=True)
class PhaseDef:
    name: str
    kind: PhaseKind
    prompt: str = ""
    field: Optional[str] = None
    owns: Tuple[str, ...] = ()
    options: Tuple[ChatOption, ...] = ()
    allow_custom: bool = False
    min_length: int = 1
    purpose: Optional[str] = None
    shape: Optional[Type[ArtifactShape]] = None
    apply: Optional[Applier] = None
    streaming: bool = False

    @property
    def is_input(self) -> bool:
        return self.kind in (PhaseKind.TEXT, PhaseKind.SELECT)

    def match_option(self, value: Optional[str]) -> Optional[ChatOption]:
        needle = (value or "").strip().lower()
        if not needle:
            return None
        for opt in self.options:
            if needle in (opt.id.lower(), opt.value.lower(), opt.label.lower()):
                return opt
        return None


@dataclass(frozen=True)
class WorkflowDef:
    kind: WorkflowKind
    entry: str
    phases: Dict[str, PhaseDef] = field(default_factory=dict)

    def phase(self, name: str) -> PhaseDef:
        return self.phases[name]

    def owned_after(self, target: str) -> List[str]:
        """Artifact fields owned by ``target`` and every phase after it."""
        order = phase_order(self.kind)
        fields: List[str] = []
        for name in order[order.index(target):]:
            for owned in self.phases[name].owns:
                if owned not in fields:
                    fields.append(owned)
        return fields


def _opt(value: str, label: Optional[str] = None, description: Optional[str] = None) -> ChatOption:
    return ChatOption(id=value, label=label or value.replace("_", " ").title(), value=value, description=description)


def _text(name: str, prompt: str, fld: str, min_length: int = 1) -> PhaseDef:
    return PhaseDef(name=name, kind=PhaseKind.TEXT, prompt=prompt, field=fld, owns=(fld,), min_length=min_length)


def _select(name: str, prompt: str, fld: str, options: Tuple[ChatOption, ...], allow_custom: bool = False) -> PhaseDef:
    return PhaseDef(
        name=name, kind=PhaseKind.SELECT, prompt=prompt, field=fld, owns=(fld,), options=options, allow_custom=allow_custom
    )


def _terminals() -> Dict[str, PhaseDef]:
    return {name: PhaseDef(name=name, kind=PhaseKind.TERMINAL) for name in ("done", "cancelled", "failed")}


# ---- appliers --------------------------------------------------------------


def _apply_title_analysis(result: ArtifactShape, artifact: Mapping[str, Any], context: Mapping[str, Any]):
    assert isinstance(result, TitleAnalysis)
    warnings: List[str] = []
    seen: List[str] = []
    questions: List[Dict[str, Any]] = []
    for q in result.questions:
        if q.id in seen:
            warnings.append(f"dropped repeated question id '{q.id}'")
            continue
        seen.append(q.id)
        questions.append(q.model_dump())
    return {
        "module": result.module,
        "flow_type": result.flow_type or "other",
        "understanding": result.understanding,
        "questions": questions,
        "answers": {},
    }, warnings


def _apply_steps(result: ArtifactShape, artifact: Mapping[str, Any], context: Mapping[str, Any]):
    assert isinstance(result, TicketSteps)
    steps = [s.strip() for s in result.steps if s and s.strip()]
    return {"steps": steps, "preconditions": list(result.preconditions)}, []


def _apply_scenario(result: ArtifactShape, artifact: Mapping[str, Any], context: Mapping[str, Any]):
    assert isinstance(result, ScenarioResult)
    return {
        "title": result.title,
        "steps": list(result.steps),
        "tags": list(result.tags),
        "scenario_type": result.scenario_type or "positive",
    }, []


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(_cell(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def trim_rows(
    rows: List[Dict[str, Any]], columns: List[Dict[str, str]]
) -> Tuple[List[Dict[str, str]], List[str], List[str]]:
    """Project generated rows onto the reference column keys.

    Returns (rows, column keys, warnings). Cells become strings, list cells
    one item per line. Without reference columns the keys are collected
    from the rows in first-seen order.
    """
    warnings: List[str] = []
    if not columns:
        keys: List[str] = []
        for row in rows:
            for key in row:
                if key not in keys:
                    keys.append(key)
        return [{key: _cell(value) for key, value in row.items()} for row in rows], keys, warnings
    keys = [c["key"] for c in columns]
    unknown: List[str] = []
    trimmed: List[Dict[str, str]] = []
    for row in rows:
        for key in row:
            if key not in keys and key not in unknown:
                unknown.append(key)
        trimmed.append({key: _cell(row.get(key)) for key in keys})
    for key in unknown:
        warnings.append(f"dropped column '{key}' not present in the reference structure")
    return trimmed, keys, warnings


def _apply_testcases(result: ArtifactShape, artifact: Mapping[str, Any], context: Mapping[str, Any]):
    assert isinstance(result, TestCaseBatch)
    rows, keys, warnings = trim_rows(result.cases, list(context.get("reference_columns") or []))
    return {"cases": rows, "columns": keys}, warnings


def rank_locators(locators: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Recommended first, then by canonical XPath type order; stable otherwise."""

    def key(item: Tuple[int, Dict[str, Any]]):
        idx, loc = item
        kind = loc.get("type")
        order = XPATH_TYPE_ORDER.index(kind) if kind in XPATH_TYPE_ORDER else len(XPATH_TYPE_ORDER)
        return (0 if loc.get("recommended") else 1, order, idx)

    return [loc for _, loc in sorted(enumerate(locators), key=key)]


def _apply_xpaths(result: ArtifactShape, artifact: Mapping[str, Any], context: Mapping[str, Any]):
    assert isinstance(result, XPathResult)
    locators = [loc.model_dump() for loc in result.locators]
    warnings: List[str] = []
    if sum(1 for loc in locators if loc["recommended"]) > 1:
        warnings.append("more than one locator marked recommended")
    return {"element": result.element or artifact.get("query"), "locators": rank_locators(locators)}, warnings


# ---- ticket helpers -------------------------------------------------------


def compose_description(artifact: Mapping[str, Any]) -> str:
    steps = artifact.get("steps") or []
    procedure = "\n".join(f"{idx}. {step}" for idx, step in enumerate(steps, start=1)) or "N/A"
    lines = [
        f"*Environment:* {artifact.get('platform') or 'N/A'}",
        "",
        f"*Summary:* {artifact.get('summary', '')}",
        "",
        "*Procedure:*",
        procedure,
        "",
        f"*Actual Result:* {artifact.get('actual_result') or 'N/A'}",
        "",
        f"*Expected Result:* {artifact.get('expected_result') or 'N/A'}",
    ]
    preconditions = artifact.get("preconditions") or []
    if preconditions:
        lines.extend(["", "*Preconditions:*", *[f"- {p}" for p in preconditions]])
    return "\n".join(lines)


def history_entry(kind: WorkflowKind, artifact: Mapping[str, Any]) -> Tuple[str, str, Dict[str, Any]]:
    """(title, summary, metadata) recorded when a workflow completes."""
    if kind == WorkflowKind.TICKET:
        title = str(artifact.get("summary", ""))
        summary = " · ".join(str(v) for v in (artifact.get("issue_type"), artifact.get("priority"), artifact.get("ticket_key")) if v)
        meta = {k: artifact.get(k) for k in ("ticket_key", "ticket_url", "module", "platform") if artifact.get(k)}
    elif kind == WorkflowKind.SCENARIO:
        title = str(artifact.get("title") or artifact.get("query", ""))
        summary = f"{artifact.get('framework')} scenario, {len(artifact.get('steps') or [])} steps"
        meta = {k: artifact.get(k) for k in ("framework", "module", "platform", "tags") if artifact.get(k)}
    elif kind == WorkflowKind.TESTCASE:
        title = str(artifact.get("query", ""))[:80]
        summary = f"{len(artifact.get('cases') or [])} test cases"
        meta = {"mode": artifact.get("mode"), "columns": artifact.get("columns") or []}
    else:
        title = str(artifact.get("element") or artifact.get("query", ""))
        summary = f"{len(artifact.get('locators') or [])} locators for {artifact.get('platform')}"
        meta = {k: artifact.get(k) for k in ("module", "platform") if artifact.get(k)}
        recommended = next((loc for loc in artifact.get("locators") or [] if loc.get("recommended")), None)
        if recommended:
            meta["recommended"] = recommended.get("xpath")
    return title, summary, meta


# ---- tables ---------------------------------------------------------------

REVIEW_RESULT_OPTIONS = (
    _opt("save", "Save", "Keep this result and finish"),
    _opt("regenerate", "Regenerate", "Ask the assistant for another version"),
)

PLATFORM_OPTIONS = (_opt("android", "Android"), _opt("ios", "iOS"))

TICKET = WorkflowDef(
    kind=WorkflowKind.TICKET,
    entry=ENTRY_PHASES[WorkflowKind.TICKET],
    phases={
        "collecting_summary": _text(
            "collecting_summary", "What is the issue? Give me a short title for the ticket.", "summary", min_length=5
        ),
        "selecting_issue_type": _select(
            "selecting_issue_type",
            "What type of issue is this?",
            "issue_type",
            (_opt("Bug"), _opt("Task"), _opt("Story"), _opt("Incident")),
        ),
        "selecting_priority": _select(
            "selecting_priority",
            "How urgent is it?",
            "priority",
            (_opt("Critical"), _opt("High"), _opt("Medium"), _opt("Low")),
        ),
        "selecting_platform": _select(
            "selecting_platform",
            "Which platform is affected?",
            "platform",
            (_opt("Android"), _opt("iOS"), _opt("Web"), _opt("Both")),
        ),
        "analyzing_title": PhaseDef(
            name="analyzing_title",
            kind=PhaseKind.AI,
            prompt="Analyzing your title to understand the affected flow...",
            owns=("module", "flow_type", "understanding", "questions"),
            purpose="analyze_title",
            shape=TitleAnalysis,
            apply=_apply_title_analysis,
        ),
        "asking_dynamic_questions": PhaseDef(
            name="asking_dynamic_questions", kind=PhaseKind.QUESTIONS, owns=("answers",)
        ),
        "collecting_actual_result": _text(
            "collecting_actual_result", "What actually happened?", "actual_result", min_length=3
        ),
        "collecting_expected_result": _text(
            "collecting_expected_result", "What did you expect to happen instead?", "expected_result", min_length=3
        ),
        "generating_steps": PhaseDef(
            name="generating_steps",
            kind=PhaseKind.AI,
            prompt="Generating reproduction steps...",
            owns=("steps", "preconditions"),
            purpose="generate_steps",
            shape=TicketSteps,
            apply=_apply_steps,
        ),
        "checking_duplicates": PhaseDef(
            name="checking_duplicates",
            kind=PhaseKind.CHECK,
            prompt="Checking for similar tickets...",
            owns=("duplicates",),
        ),
        "reviewing_duplicates": PhaseDef(
            name="reviewing_duplicates",
            kind=PhaseKind.REVIEW,
            prompt="These existing tickets look very similar. How do you want to continue?",
            owns=("duplicate_override",),
            options=(
                _opt("proceed", "Create anyway", "Continue with a new ticket"),
                _opt("edit", "Edit summary", "Go back and reword the ticket title"),
                _opt("cancel", "Cancel", "Stop without creating a ticket"),
            ),
        ),
        "confirming": PhaseDef(
            name="confirming",
            kind=PhaseKind.CONFIRM,
            prompt="Here is the ticket preview. Shall I create it?",
            owns=("description",),
            options=(
                _opt("confirm", "Create ticket"),
                _opt("edit", "Edit summary"),
                _opt("cancel", "Cancel"),
            ),
        ),
        "submitting": PhaseDef(
            name="submitting", kind=PhaseKind.SUBMIT, prompt="Creating the ticket...", owns=("ticket_key", "ticket_url")
        ),
        **_terminals(),
    },
)

SCENARIO = WorkflowDef(
    kind=WorkflowKind.SCENARIO,
    entry=ENTRY_PHASES[WorkflowKind.SCENARIO],
    phases={
        "selecting_framework": _select(
            "selecting_framework",
            "Which automation framework should the scenario target?",
            "framework",
            (
                _opt("cucumber", "Cucumber (BDD)"),
                _opt("testng", "TestNG"),
                _opt("playwright", "Playwright"),
                _opt("pytest", "PyTest"),
                _opt("custom", "Custom"),
            ),
        ),
        "selecting_module": _select(
            "selecting_module",
            "Which module of the app is this for?",
            "module",
            (_opt("Login"), _opt("Registration"), _opt("Dashboard"), _opt("Payment"), _opt("Profile")),
            allow_custom=True,
        ),
        "selecting_platform": _select(
            "selecting_platform", "Which platform?", "platform", PLATFORM_OPTIONS + (_opt("both", "Both"),)
        ),
        "collecting_query": _text(
            "collecting_query", "Describe the scenario you want to automate.", "query", min_length=5
        ),
        "generating": PhaseDef(
            name="generating",
            kind=PhaseKind.AI,
            prompt="Generating the scenario...",
            owns=("title", "steps", "tags", "scenario_type"),
            purpose="generate_scenario",
            shape=ScenarioResult,
            apply=_apply_scenario,
            streaming=True,
        ),
        "reviewing_result": PhaseDef(
            name="reviewing_result",
            kind=PhaseKind.REVIEW,
            prompt="Here is the scenario. Save it, regenerate it, or tell me what to change.",
            options=REVIEW_RESULT_OPTIONS,
        ),
        **_terminals(),
    },
)

TESTCASE = WorkflowDef(
    kind=WorkflowKind.TESTCASE,
    entry=ENTRY_PHASES[WorkflowKind.TESTCASE],
    phases={
        "selecting_mode": _select(
            "selecting_mode",
            "Should I use your workspace context or work from your description only?",
            "mode",
            (
                _opt("workspace", "Workspace", "Use attached user stories and reference structure"),
                _opt("manual", "Manual", "Work from the description only"),
            ),
        ),
        "collecting_query": _text(
            "collecting_query", "Which feature or requirement should the test cases cover?", "query", min_length=5
        ),
        "generating": PhaseDef(
            name="generating",
            kind=PhaseKind.AI,
            prompt="Generating test cases...",
            owns=("cases", "columns"),
            purpose="generate_testcases",
            shape=TestCaseBatch,
            apply=_apply_testcases,
            streaming=True,
        ),
        "reviewing_result": PhaseDef(
            name="reviewing_result",
            kind=PhaseKind.REVIEW,
            prompt="Here are the test cases. Save them, regenerate, or tell me what to change.",
            options=REVIEW_RESULT_OPTIONS,
        ),
        **_terminals(),
    },
)

XPATH = WorkflowDef(
    kind=WorkflowKind.XPATH,
    entry=ENTRY_PHASES[WorkflowKind.XPATH],
    phases={
        "selecting_module": _select(
            "selecting_module",
            "Which module of the app is the element in?",
            "module",
            (_opt("Login"), _opt("Registration"), _opt("Dashboard"), _opt("Payment"), _opt("Profile")),
            allow_custom=True,
        ),
        "selecting_platform": _select("selecting_platform", "Android or iOS?", "platform", PLATFORM_OPTIONS),
        "collecting_query": _text(
            "collecting_query", "Which element do you need locators for?", "query", min_length=3
        ),
        "generating": PhaseDef(
            name="generating",
            kind=PhaseKind.AI,
            prompt="Generating XPaths...",
            owns=("element", "locators"),
            purpose="generate_xpaths",
            shape=XPathResult,
            apply=_apply_xpaths,
            streaming=True,
        ),
        "reviewing_result": PhaseDef(
            name="reviewing_result",
            kind=PhaseKind.REVIEW,
            prompt="Here are the locators, recommended first. Save them, regenerate, or tell me what to change.",
            options=REVIEW_RESULT_OPTIONS,
        ),
        **_terminals(),
    },
)

WORKFLOWS: Dict[WorkflowKind, WorkflowDef] = {
    WorkflowKind.TICKET: TICKET,
    WorkflowKind.SCENARIO: SCENARIO,
    WorkflowKind.TESTCASE: TESTCASE,
    WorkflowKind.XPATH: XPATH,
}


def get_workflow(kind: WorkflowKind) -> WorkflowDef:
    return WORKFLOWS[WorkflowKind(kind)]


def _check_tables() -> None:
    for kind, flow in WORKFLOWS.items():
        missing = [name for name in PHASE_TRANSITIONS[kind] if name not in flow.phases]
        if missing:
            raise RuntimeError(f"{kind.value} workflow lacks phase definitions for {missing}")


_check_tables()
