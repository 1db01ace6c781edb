"""Shapes of the machine-readable blocks the model is asked to emit.

Every field carries a default so a partially filled block still validates;
``REQUIRED`` names the fields that must be present for the block to count
as complete. ``ROOT_LIST_FIELD`` lets a bare JSON array stand in for the
object when the model answers with just the list.
"""

from __future__ import annotations

from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from .models import DynamicQuestion


XPathType = Literal[
    "absolute",
    "relative",
    "chained",
    "following",
    "following-sibling",
    "preceding",
    "preceding-sibling",
]

XPATH_TYPE_ORDER: Tuple[str, ...] = (
    "absolute",
    "relative",
    "chained",
    "following",
    "following-sibling",
    "preceding",
    "preceding-sibling",
)


class ArtifactShape(BaseModel):
    REQUIRED: ClassVar[Tuple[str, ...]] = ()
    ROOT_LIST_FIELD: ClassVar[Optional[str]] = None


class TitleAnalysis(ArtifactShape):
    REQUIRED: ClassVar[Tuple[str, ...]] = ("module",)

    module: Optional[str] = None
    flow_type: Optional[str] = None
    understanding: Optional[str] = None
    questions: List[DynamicQuestion] = Field(default_factory=list)


class TicketSteps(ArtifactShape):
    REQUIRED: ClassVar[Tuple[str, ...]] = ("steps",)

    steps: List[str] = Field(default_factory=list)
    preconditions: List[str] = Field(default_factory=list)
    module: Optional[str] = None


class ScenarioResult(ArtifactShape):
    REQUIRED: ClassVar[Tuple[str, ...]] = ("title", "steps")

    title: Optional[str] = None
    steps: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    scenario_type: Optional[Literal["positive", "negative", "edge"]] = None


class TestCaseBatch(ArtifactShape):
    __test__ = False

    REQUIRED: ClassVar[Tuple[str, ...]] = ("cases",)
    ROOT_LIST_FIELD: ClassVar[Optional[str]] = "cases"

    cases: List[Dict[str, Any]] = Field(default_factory=list)


class Locator(BaseModel):
    type: XPathType
    xpath: str
    recommended: bool = False
    explanation: Optional[str] = None


class XPathResult(ArtifactShape):
    REQUIRED: ClassVar[Tuple[str, ...]] = ("locators",)

    element: Optional[str] = None
    locators: List[Locator] = Field(default_factory=list)
    ROOT_LIST_FIELD: ClassVar[Optional[str]] = "locators"
