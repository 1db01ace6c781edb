import pytest

from src.qapilot.services.prompt_builder import JSON_BLOCK_RULE, PromptBuilder, describe_request


@pytest.fixture()
def builder():
    return PromptBuilder("test-model")


def test_identical_inputs_give_equal_requests(builder):
    artifact = {"summary": "Login fails", "issue_type": "Bug", "platform": "Android"}
    first = builder.build("analyze_title", artifact, {})
    second = builder.build("analyze_title", dict(artifact), {})
    assert first == second
    assert first.model == "test-model"
    assert [m["role"] for m in first.messages] == ["system", "user"]
    assert 'Ticket Title: "Login fails"' in first.messages[1]["content"]


def test_every_purpose_asks_for_a_json_block(builder):
    for purpose in ("analyze_title", "generate_steps", "generate_scenario", "generate_testcases", "generate_xpaths"):
        request = builder.build(purpose, {"query": "login", "summary": "Login fails"})
        assert JSON_BLOCK_RULE in request.messages[0]["content"]


def test_reference_structure_section_only_when_attached(builder):
    artifact = {"mode": "workspace", "query": "Password reset"}
    without = builder.build("generate_testcases", artifact, {})
    assert "Reference Output Format" not in without.messages[0]["content"]
    assert "expected_result" in without.messages[0]["content"]

    columns = [{"key": "case_id", "header": "Case"}, {"key": "outcome", "header": "Outcome"}]
    with_ref = builder.build("generate_testcases", artifact, {"reference_columns": columns})
    system = with_ref.messages[0]["content"]
    assert "Reference Output Format" in system
    assert "- case_id: Case" in system


def test_manual_mode_note(builder):
    request = builder.build("generate_testcases", {"mode": "manual", "query": "Signup"}, {})
    assert "Mode: Manual" in request.messages[0]["content"]


def test_absent_context_is_not_fabricated(builder):
    request = builder.build("generate_scenario", {"framework": "cucumber", "query": "Pay"}, {})
    system = request.messages[0]["content"]
    assert "User Stories" not in system
    assert "Available App Files" not in system

    context = {"user_stories": "As a buyer I can pay by card", "app_files": [{"name": "app.apk", "type": "apk"}]}
    system = builder.build("generate_scenario", {"framework": "cucumber", "query": "Pay"}, context).messages[0]["content"]
    assert "## User Stories\nAs a buyer I can pay by card" in system
    assert "- app.apk (apk)" in system


def test_framework_and_platform_guidance(builder):
    scenario = builder.build("generate_scenario", {"framework": "playwright", "query": "Login"})
    assert "Playwright" in scenario.messages[0]["content"]

    xpaths = builder.build("generate_xpaths", {"platform": "ios", "query": "Login button"})
    assert "XCUIElementTypeButton" in xpaths.messages[0]["content"]
    assert "resource-id" not in xpaths.messages[0]["content"]


def test_clarifications_and_user_text_are_appended(builder):
    context = {"clarifications": ["It is the checkout page", "  "]}
    request = builder.build("generate_steps", {"summary": "Pay fails"}, context, user_text=" use a saved card ", stream=True)
    assert request.stream is True
    assert request.messages[-2:] == [
        {"role": "user", "content": "It is the checkout page"},
        {"role": "user", "content": "use a saved card"},
    ]


def test_unknown_purpose_is_rejected(builder):
    with pytest.raises(ValueError):
        builder.build("write_poem", {})


def test_describe_request_omits_message_bodies(builder):
    request = builder.build("analyze_title", {"summary": "Secret project title"})
    line = describe_request(request)
    assert "Secret project title" not in line
    assert '"roles": "system,user"' in line
