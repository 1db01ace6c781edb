from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


JSON_BLOCK_RULE = (
    "Put the machine-readable result in exactly one ```json fenced block. "
    "You may add a short explanation for the user outside the block."
)

FRAMEWORK_PROMPTS: Dict[str, str] = {
    "cucumber": (
        "Generate BDD scenarios in Gherkin/Cucumber format with When/And/Then steps.\n"
        "Format each step like:\n"
        "When [action description]\n"
        "And [action description]\n"
        "Then [expected result]"
    ),
    "testng": (
        "Generate TestNG test scenarios in Java format with @Test annotations.\n"
        "Each step is a commented action followed by the Selenium/Appium call, and the test\n"
        "ends with an assertion of the expected result."
    ),
    "playwright": (
        "Generate Playwright test scenarios in TypeScript format.\n"
        "Use test('should ...', async ({ page }) => { ... }) with page.goto, page.fill,\n"
        "page.click and expect(...) assertions."
    ),
    "pytest": (
        "Generate PyTest scenarios in Python format.\n"
        "Use def test_...(): functions with a comment per step and a closing assert."
    ),
    "custom": (
        "Generate automation scenarios in a clear, step-by-step format that can be adapted to any framework.\n"
        "Format like:\n"
        "Step 1: [Action] - [Details]\n"
        "Step 2: [Action] - [Details]\n"
        "Expected Result: [What should happen]"
    ),
}

PLATFORM_PROMPTS: Dict[str, str] = {
    "android": (
        "For Android elements, use these attributes:\n"
        "- resource-id: most reliable, //android.widget.Button[@resource-id='com.app:id/login_btn']\n"
        "- content-desc: accessibility label, //*[@content-desc='Login button']\n"
        "- text: visible text, //android.widget.TextView[@text='Login']\n"
        "- class: widget types like android.widget.Button, android.widget.EditText"
    ),
    "ios": (
        "For iOS elements, use these attributes:\n"
        "- name: primary identifier, //XCUIElementTypeButton[@name='Login']\n"
        "- label: accessibility label, //*[@label='Login button']\n"
        "- value: current value for inputs, //XCUIElementTypeTextField[@value='username']\n"
        "- type: element types like XCUIElementTypeButton, XCUIElementTypeStaticText"
    ),
}

DEFAULT_TESTCASE_COLUMNS: List[Dict[str, str]] = [
    {"key": "id", "header": "Test Case ID"},
    {"key": "title", "header": "Title"},
    {"key": "preconditions", "header": "Preconditions"},
    {"key": "steps", "header": "Test Steps"},
    {"key": "expected_result", "header": "Expected Result"},
    {"key": "priority", "header": "Priority"},
]


class CompletionRequest(BaseModel):
    """What the completion transport sends to the AI gateway."""

    model_config = ConfigDict(frozen=True)

    model: str
    messages: List[Dict[str, str]] = Field(default_factory=list)
    stream: bool = False
    temperature: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


def _section(title: str, body: str) -> str:
    return f"## {title}\n{body}"


def _context_sections(context: Mapping[str, Any]) -> List[str]:
    parts: List[str] = []
    stories = context.get("user_stories")
    if isinstance(stories, str) and stories.strip():
        parts.append(_section("User Stories", stories.strip()))
    files = context.get("app_files") or []
    if files:
        lines = [f"- {f.get('name')} ({f.get('type') or 'file'})" for f in files if isinstance(f, dict) and f.get("name")]
        if lines:
            parts.append(_section("Available App Files", "\n".join(lines)))
    return parts


def _clarifications(context: Mapping[str, Any]) -> List[Dict[str, str]]:
    return [
        {"role": "user", "content": str(text)}
        for text in (context.get("clarifications") or [])
        if str(text).strip()
    ]


def _answers_block(artifact: Mapping[str, Any]) -> str:
    answers = artifact.get("answers") or {}
    if not answers:
        return "No specific inputs provided"
    return "\n".join(f"{key}: {answers[key]}" for key in sorted(answers))


def _analyze_title(artifact: Mapping[str, Any], context: Mapping[str, Any]) -> List[Dict[str, str]]:
    system = "\n\n".join(
        [
            "You are an intelligent ticket assistant that analyzes ticket titles to understand the "
            "context and determine what information is needed before reproduction steps can be written.",
            *_context_sections(context),
            "Based on the ticket title, you must:\n"
            "1. Identify the application module or feature being referenced\n"
            "2. Determine what specific inputs are needed to reproduce the issue\n"
            "3. Generate 0-3 focused follow-up questions to gather reproduction data",
            "Respond with this JSON shape:\n"
            '{"module": "...", "flow_type": "login|registration|checkout|profile|settings|search|'
            'navigation|payment|other", "understanding": "...", "questions": [{"id": "unique_id", '
            '"question": "...", "input_kind": "text|select|credentials", "placeholder": "...", '
            '"options": [], "required": true}]}',
            "Rules:\n"
            "- Questions must be specific to the identified flow\n"
            "- For login issues ask for credentials with input_kind credentials\n"
            "- Keep questions minimal and never ask for what can be inferred",
            JSON_BLOCK_RULE,
        ]
    )
    user = (
        f'Ticket Title: "{artifact.get("summary", "")}"\n'
        f"Issue Type: {artifact.get('issue_type') or 'Bug'}\n"
        f"Platform: {artifact.get('platform') or 'Not specified'}"
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def _generate_steps(artifact: Mapping[str, Any], context: Mapping[str, Any]) -> List[Dict[str, str]]:
    system = "\n\n".join(
        [
            "You are an expert QA engineer that generates precise, reproducible steps for tickets.",
            *_context_sections(context),
            "Generate steps that follow the real application flow leading to the issue. Work backwards "
            "from the expected result, use clear action words (tap, click, enter, swipe, navigate) and "
            "include setup steps such as login. No imaginary steps.",
            'Respond with this JSON shape:\n{"steps": ["..."], "preconditions": ["..."], "module": "..."}',
            JSON_BLOCK_RULE,
        ]
    )
    user = (
        f'Ticket Title: "{artifact.get("summary", "")}"\n'
        f"Issue Type: {artifact.get('issue_type') or 'Bug'}\n"
        f"Platform: {artifact.get('platform') or 'Both'}\n"
        f"Module: {artifact.get('module') or 'Unknown'}\n\n"
        f"Actual Result (what went wrong):\n{artifact.get('actual_result') or 'Not provided'}\n\n"
        f"Expected Result (what should happen):\n{artifact.get('expected_result') or 'Not provided'}\n\n"
        f"Additional Context:\n{_answers_block(artifact)}"
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def _generate_scenario(artifact: Mapping[str, Any], context: Mapping[str, Any]) -> List[Dict[str, str]]:
    framework = artifact.get("framework") or "custom"
    module = artifact.get("module") or "General"
    sections = _context_sections(context)
    system = "\n\n".join(
        [
            "You are an expert QA Automation Engineer specializing in automation-ready test scenarios.",
            f'Generate detailed, accurate automation scenarios for the "{module}" module.',
            _section("Framework", FRAMEWORK_PROMPTS.get(framework, FRAMEWORK_PROMPTS["custom"])),
            "Rules:\n"
            "1. Scenario steps must follow the user story flow exactly\n"
            "2. Reflect real application behavior, no placeholder steps\n"
            "3. Include proper assertions and verifications\n"
            "4. Consider positive, negative and edge cases based on the request",
            *sections,
            'Respond with this JSON shape:\n{"title": "...", "steps": ["..."], "tags": ["..."], '
            '"scenario_type": "positive|negative|edge"}',
            JSON_BLOCK_RULE,
        ]
    )
    user = (
        f"Generate automation scenarios for: {artifact.get('query', '')}\n\n"
        f"Module: {module}\nFramework: {framework}\nPlatform: {artifact.get('platform') or 'Both'}"
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def _generate_testcases(artifact: Mapping[str, Any], context: Mapping[str, Any]) -> List[Dict[str, str]]:
    parts = [
        "You are an expert QA Engineer and Test Case Generator. Create comprehensive, professional test "
        "cases covering functional, negative, boundary and edge conditions.",
        "Guidelines:\n"
        "1. Each test case must have a unique ID (TC_001, TC_002, ...)\n"
        "2. Test steps must be clear and reproducible\n"
        "3. Expected results must be specific and measurable",
    ]
    parts.extend(_context_sections(context))
    columns = context.get("reference_columns") or []
    if columns:
        listing = "\n".join(f"- {c['key']}: {c.get('header') or c['key']}" for c in columns)
        parts.append(
            _section(
                "Reference Output Format",
                "The user provided a reference structure. Use these exact column keys for every row:\n" + listing,
            )
        )
    else:
        listing = ", ".join(c["key"] for c in DEFAULT_TESTCASE_COLUMNS)
        parts.append(f"Use these column keys for every row: {listing}.")
    if artifact.get("mode") == "manual":
        parts.append(
            _section(
                "Mode: Manual",
                "You are operating without workspace context. Base the test cases purely on the "
                "user's description and general good practice.",
            )
        )
    parts.append('Respond with a JSON array of row objects: [{"column_key": "value", ...}]')
    parts.append(JSON_BLOCK_RULE)
    return [
        {"role": "system", "content": "\n\n".join(parts)},
        {"role": "user", "content": str(artifact.get("query", ""))},
    ]


def _generate_xpaths(artifact: Mapping[str, Any], context: Mapping[str, Any]) -> List[Dict[str, str]]:
    platform = artifact.get("platform") or "android"
    module = artifact.get("module") or "General"
    system = "\n\n".join(
        [
            "You are an expert Mobile Automation Engineer specializing in XPath generation for "
            "Appium-based test automation.",
            f'Generate every XPath type for the requested element in the "{module}" module on '
            f"{'Android' if platform == 'android' else 'iOS'}.",
            _section("Platform Guidelines", PLATFORM_PROMPTS.get(platform, PLATFORM_PROMPTS["android"])),
            "XPath types: absolute, relative, chained, following, following-sibling, preceding, "
            "preceding-sibling. Mark the most stable one as recommended and explain why.",
            "Rules:\n"
            "1. Avoid dynamic attributes and indices where possible\n"
            "2. Prefer relative XPaths with unique identifiers\n"
            "3. Use element types appropriate for the platform",
            *_context_sections(context),
            'Respond with this JSON shape:\n{"element": "...", "locators": [{"type": "relative", '
            '"xpath": "...", "recommended": true, "explanation": "..."}]}',
            JSON_BLOCK_RULE,
        ]
    )
    user = f"Generate XPaths for: {artifact.get('query', '')}\n\nModule: {module}\nPlatform: {platform}"
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


TEMPLATES: Dict[str, Callable[[Mapping[str, Any], Mapping[str, Any]], List[Dict[str, str]]]] = {
    "analyze_title": _analyze_title,
    "generate_steps": _generate_steps,
    "generate_scenario": _generate_scenario,
    "generate_testcases": _generate_testcases,
    "generate_xpaths": _generate_xpaths,
}


class PromptBuilder:
    """Maps a phase purpose plus accumulated state to a completion request.

    Pure: the same inputs always give an equal request. Optional context
    sections (user stories, app files, reference columns) are left out when
    absent instead of being filled with placeholders.
    """

    def __init__(self, model: str, temperature: Optional[float] = 0.3) -> None:
        self.model = model
        self.temperature = temperature

    def build(
        self,
        purpose: str,
        artifact: Mapping[str, Any],
        context: Optional[Mapping[str, Any]] = None,
        user_text: Optional[str] = None,
        stream: bool = False,
    ) -> CompletionRequest:
        try:
            template = TEMPLATES[purpose]
        except KeyError:
            raise ValueError(f"unknown prompt purpose: {purpose}") from None
        ctx = context or {}
        messages = template(artifact, ctx) + _clarifications(ctx)
        if user_text and user_text.strip():
            messages.append({"role": "user", "content": user_text.strip()})
        return CompletionRequest(model=self.model, messages=messages, stream=stream, temperature=self.temperature)


def describe_request(request: CompletionRequest) -> str:
    """Compact log line for a request; message bodies are omitted."""
    roles = ",".join(m["role"] for m in request.messages)
    return json.dumps({"model": request.model, "stream": request.stream, "roles": roles}, sort_keys=True)
