from src.qapilot.domain.artifacts import ScenarioResult, TestCaseBatch, TicketSteps, TitleAnalysis, XPathResult
from src.qapilot.services.extractor import encode_block, extract


def test_json_fence_is_split_from_prose():
    raw = (
        "Sure, here is a scenario.\n\n"
        "```json\n"
        '{"title": "Checkout with card", "steps": ["When I pay", "Then I see a receipt"]}\n'
        "```\n"
        "Let me know if you need more."
    )
    result = extract(raw, ScenarioResult)

    assert result.complete
    assert result.structured.title == "Checkout with card"
    assert result.structured.steps == ["When I pay", "Then I see a receipt"]
    assert "```" not in result.prose
    assert result.prose.startswith("Sure, here is a scenario.")
    assert result.prose.endswith("Let me know if you need more.")
    assert result.warnings == []


def test_untagged_tilde_fence_is_accepted():
    raw = '~~~\n  {"title": "T", "steps": ["a"]}  \n~~~'
    result = extract(raw, ScenarioResult)
    assert result.complete
    assert result.prose == ""


def test_other_language_blocks_are_skipped():
    raw = "```python\nprint('hi')\n```\n\n```json\n{\"title\": \"T\", \"steps\": []}\n```"
    result = extract(raw, ScenarioResult)
    assert result.structured is not None
    assert result.structured.title == "T"
    assert "print('hi')" in result.prose


def test_unknown_fields_are_dropped_with_warnings():
    raw = (
        "```json\n"
        '{"module": "Login", "mood": "happy", '
        '"questions": [{"id": "user", "question": "Which user?", "color": "red"}]}\n'
        "```"
    )
    result = extract(raw, TitleAnalysis)

    assert result.complete
    assert result.structured.questions[0].id == "user"
    assert "dropped unknown field 'mood'" in result.warnings
    assert "dropped unknown field 'questions[0].color'" in result.warnings


def test_missing_required_fields_are_reported():
    result = extract('```json\n{"steps": ["When I log in"]}\n```', ScenarioResult)

    assert result.structured is not None
    assert result.missing == ["title"]
    assert not result.complete


def test_unparsable_block_gives_warning_not_exception():
    result = extract("Answer:\n```json\n{\"title\": \"broken\",,}\n```", ScenarioResult)

    assert result.structured is None
    assert result.found
    assert result.prose == "Answer:"
    assert result.warnings and "not valid JSON" in result.warnings[0]


def test_prose_only_answer_has_no_structure():
    result = extract("I need to know which screen you mean.", ScenarioResult)
    assert result.structured is None
    assert not result.found
    assert result.prose == "I need to know which screen you mean."


def test_none_input_is_tolerated():
    result = extract(None, ScenarioResult)
    assert result.prose == ""
    assert result.structured is None


def test_bare_array_fills_root_list_field():
    raw = '```json\n[{"id": "TC_001", "title": "Login works"}]\n```'
    result = extract(raw, TestCaseBatch)
    assert result.complete
    assert result.structured.cases == [{"id": "TC_001", "title": "Login works"}]


def test_bare_json_answer_without_fence():
    result = extract('{"locators": [{"type": "relative", "xpath": "//a"}]}', XPathResult)
    assert result.complete
    assert result.structured.locators[0].xpath == "//a"


def test_invalid_value_is_reported_as_warning():
    raw = '```json\n{"locators": [{"type": "css", "xpath": "//a"}]}\n```'
    result = extract(raw, XPathResult)
    assert result.structured is None
    assert any(w.startswith("invalid value for 'locators.0.type'") for w in result.warnings)


def test_encode_block_is_read_back_unchanged():
    scenario = ScenarioResult(title="Pay", steps=["When I pay"], tags=["@smoke"], scenario_type="edge")
    result = extract(encode_block(scenario), ScenarioResult)
    assert result.structured == scenario


def test_rows_keep_numeric_and_list_cells():
    result = extract('```json\n[{"id": 1, "title": "Reset link sent", "steps": ["a", "b"]}]\n```', TestCaseBatch)
    assert result.complete
    assert result.structured.cases == [{"id": 1, "title": "Reset link sent", "steps": ["a", "b"]}]


def test_empty_required_values_count_as_missing():
    steps = extract('```json\n{"steps": [], "preconditions": ["Logged in"]}\n```', TicketSteps)
    assert steps.structured is not None
    assert not steps.complete
    assert steps.missing == ["steps"]

    scenario = extract('```json\n{"title": "  ", "steps": ["When I pay"]}\n```', ScenarioResult)
    assert scenario.missing == ["title"]

    xpaths = extract('```json\n{"element": "Login", "locators": []}\n```', XPathResult)
    assert xpaths.missing == ["locators"]
