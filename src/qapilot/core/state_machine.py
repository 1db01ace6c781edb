from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from ..domain.models import WorkflowKind

TERMINAL_PHASES: Tuple[str, ...] = ("done", "cancelled", "failed")

# Phase graphs per workflow. The first target is the default forward step;
# later targets are branches taken on a specific outcome.
PHASE_TRANSITIONS: Dict[WorkflowKind, Dict[str, List[str]]] = {
    WorkflowKind.TICKET: {
        "collecting_summary": ["selecting_issue_type"],
        "selecting_issue_type": ["selecting_priority"],
        "selecting_priority": ["selecting_platform"],
        "selecting_platform": ["analyzing_title"],
        "analyzing_title": ["asking_dynamic_questions"],
        "asking_dynamic_questions": ["collecting_actual_result"],
        "collecting_actual_result": ["collecting_expected_result"],
        "collecting_expected_result": ["generating_steps"],
        "generating_steps": ["checking_duplicates"],
        "checking_duplicates": ["confirming", "reviewing_duplicates"],
        "reviewing_duplicates": ["confirming"],
        "confirming": ["submitting"],
        "submitting": ["done", "failed"],
    },
    WorkflowKind.SCENARIO: {
        "selecting_framework": ["selecting_module"],
        "selecting_module": ["selecting_platform"],
        "selecting_platform": ["collecting_query"],
        "collecting_query": ["generating"],
        "generating": ["reviewing_result"],
        "reviewing_result": ["done", "generating"],
    },
    WorkflowKind.TESTCASE: {
        "selecting_mode": ["collecting_query"],
        "collecting_query": ["generating"],
        "generating": ["reviewing_result"],
        "reviewing_result": ["done", "generating"],
    },
    WorkflowKind.XPATH: {
        "selecting_module": ["selecting_platform"],
        "selecting_platform": ["collecting_query"],
        "collecting_query": ["generating"],
        "generating": ["reviewing_result"],
        "reviewing_result": ["done", "generating"],
    },
}

ENTRY_PHASES: Dict[WorkflowKind, str] = {
    WorkflowKind.TICKET: "collecting_summary",
    WorkflowKind.SCENARIO: "selecting_framework",
    WorkflowKind.TESTCASE: "selecting_mode",
    WorkflowKind.XPATH: "selecting_module",
}


def phase_order(kind: WorkflowKind) -> List[str]:
    """Non-terminal phases in the order the forward path visits them."""
    order: List[str] = list(PHASE_TRANSITIONS[kind])
    for targets in PHASE_TRANSITIONS[kind].values():
        for target in targets:
            if target not in order and target not in TERMINAL_PHASES:
                order.append(target)
    return order


def next_phase(kind: WorkflowKind, current: str) -> Optional[str]:
    options = PHASE_TRANSITIONS[kind].get(current, [])
    return options[0] if options else None


def is_upstream(kind: WorkflowKind, target: str, current: str) -> bool:
    order = phase_order(kind)
    if target not in order or current not in order:
        return False
    return order.index(target) < order.index(current)
