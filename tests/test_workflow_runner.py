import threading
from datetime import UTC, datetime

import pytest

from src.qapilot.config import EngineConfig
from src.qapilot.core.engine import WorkflowEngine
from src.qapilot.core.events import EventType
from src.qapilot.domain.errors import (
    AuthExpired,
    PersistenceError,
    QuotaExhausted,
    RateLimited,
    SessionNotFound,
    SubmissionFailed,
    ValidationFailed,
)
from src.qapilot.domain.models import PendingRequest, PriorTicket, SessionStatus, WorkflowKind
from src.qapilot.infrastructure.history_store import InMemoryHistoryStore
from src.qapilot.infrastructure.session_store import InMemorySessionStore
from src.qapilot.infrastructure.ticket_gateway import InMemoryTicketGateway
from src.qapilot.services.completion_transport import STREAMING
from src.qapilot.services.workflow_runner import WorkflowRunner

from .fakes import OTHER, USER, BlockingStream, FakeStream, FakeTransport, block, fixed_now, id_factory

SUMMARY = "Login button does nothing on tap"
ANALYSIS = block({"module": "Login", "flow_type": "login", "questions": []})
STEPS = block({"steps": ["Open the app", "Tap Login"]})


def make_runner(replies=None, tickets=None, sessions=None):
    config = EngineConfig()
    return WorkflowRunner(
        engine=WorkflowEngine(config, now=fixed_now, new_id=id_factory()),
        transport=FakeTransport(replies),
        sessions=sessions or InMemorySessionStore(),
        history=InMemoryHistoryStore(),
        tickets=tickets or InMemoryTicketGateway(project_key="QA", base_url="https://tickets.test/browse"),
        config=config,
    )


def ticket_until_analysis(runner):
    sid = runner.start(USER, WorkflowKind.TICKET).session.session_id
    runner.handle(USER, sid, EventType.USER_TEXT, text=SUMMARY)
    runner.handle(USER, sid, EventType.OPTION_SELECTED, option="Bug")
    runner.handle(USER, sid, EventType.OPTION_SELECTED, option="High")
    return sid, runner.handle(USER, sid, EventType.OPTION_SELECTED, option="Android")


def scenario_until_query(runner):
    sid = runner.start(USER, WorkflowKind.SCENARIO).session.session_id
    runner.handle(USER, sid, EventType.OPTION_SELECTED, option="cucumber")
    runner.handle(USER, sid, EventType.OPTION_SELECTED, option="Login")
    runner.handle(USER, sid, EventType.OPTION_SELECTED, option="android")
    return sid


def test_streamed_scenario_publishes_cumulative_text_and_records_history():
    fragments = ["Here you go.\n```json\n", '{"title": "Log in", "steps": ["When I log in"]}', "\n```"]
    runner = make_runner([FakeStream(fragments)])
    sid = scenario_until_query(runner)

    seen = []
    outcome = runner.handle(USER, sid, EventType.USER_TEXT, text="Log in with valid user", on_fragment=seen.append)

    assert outcome.session.phase == "reviewing_result"
    assert outcome.session.artifact["title"] == "Log in"
    assert runner.transport.requests[0][1] == STREAMING
    assert seen == ["".join(fragments[:i]) for i in range(1, len(fragments) + 1)]
    assert runner.streams.get(sid) is None

    done = runner.handle(USER, sid, EventType.OPTION_SELECTED, option="save")
    assert done.session.status == SessionStatus.COMPLETED
    entries = runner.list_history(USER, WorkflowKind.SCENARIO)
    assert [e.title for e in entries] == ["Log in"]
    assert entries[0].metadata["session_id"] == sid


def test_ticket_flow_with_duplicate_review_and_submission():
    tickets = InMemoryTicketGateway(project_key="QA", base_url="https://tickets.test/browse")
    tickets.seed(
        USER.user_id,
        [
            PriorTicket(
                key="QA-100",
                summary=SUMMARY,
                module="Login",
                issue_type="Bug",
                status="Open",
                created_at=datetime(2024, 4, 1, tzinfo=UTC),
            )
        ],
    )
    runner = make_runner([ANALYSIS, STEPS], tickets=tickets)
    sid, outcome = ticket_until_analysis(runner)

    # no dynamic questions, so the analysis goes straight on
    assert outcome.session.phase == "collecting_actual_result"
    assert [c.name for c in outcome.commands] == ["RequestCompletion"]

    runner.handle(USER, sid, EventType.USER_TEXT, text="Nothing happens")
    outcome = runner.handle(USER, sid, EventType.USER_TEXT, text="Dashboard opens")
    assert outcome.session.phase == "reviewing_duplicates"
    assert outcome.session.artifact["duplicates"][0]["key"] == "QA-100"
    assert outcome.session.artifact["duplicates"][0]["score"] == pytest.approx(1.0)

    runner.handle(USER, sid, EventType.OPTION_SELECTED, option="proceed")
    outcome = runner.handle(USER, sid, EventType.OPTION_SELECTED, option="confirm")

    session = outcome.session
    assert session.phase == "done"
    assert session.artifact["ticket_key"] == "QA-1"
    assert session.artifact["ticket_url"] == "https://tickets.test/browse/QA-1"
    assert [c.name for c in outcome.commands] == ["SubmitArtifact", "RecordHistory"]
    assert runner.list_history(USER)[0].metadata["ticket_key"] == "QA-1"
    assert runner.get(USER, sid).phase == "done"


def test_rate_limit_keeps_session_resumable():
    runner = make_runner([RateLimited("slow down", status_code=429), ANALYSIS])
    sid, outcome = ticket_until_analysis(runner)

    assert outcome.session.phase == "analyzing_title"
    assert outcome.session.last_error == "rate_limited"
    assert outcome.session.pending is None

    resumed = runner.handle(USER, sid, EventType.RETRY)
    assert resumed.session.phase == "collecting_actual_result"
    assert resumed.session.artifact["module"] == "Login"


def test_quota_exhaustion_blocks_until_restored():
    runner = make_runner([QuotaExhausted("no credits", status_code=402), ANALYSIS])
    sid, outcome = ticket_until_analysis(runner)

    assert outcome.session.blocked == "quota_exhausted"
    assert outcome.session.status == SessionStatus.ACTIVE

    ignored = runner.handle(USER, sid, EventType.USER_TEXT, text="hello?")
    assert ignored.session.blocked == "quota_exhausted"
    assert ignored.commands[0].name == "NoOp"
    assert ignored.session.artifact["summary"] == SUMMARY

    runner.handle(USER, sid, EventType.QUOTA_RESTORED)
    resumed = runner.handle(USER, sid, EventType.RETRY)
    assert resumed.session.blocked is None
    assert resumed.session.phase == "collecting_actual_result"


def test_cancel_stream_from_another_thread_keeps_partial_text():
    stream = BlockingStream('{"title": "Half')
    runner = make_runner([stream])
    sid = scenario_until_query(runner)

    results = {}

    def generate():
        results["outcome"] = runner.handle(USER, sid, EventType.USER_TEXT, text="Log in with valid user")

    worker = threading.Thread(target=generate)
    worker.start()
    assert stream.waiting.wait(5)

    assert runner.cancel_stream(USER, sid)
    worker.join(5)
    assert not worker.is_alive()

    session = results["outcome"].session
    assert stream.closed
    assert session.phase == "generating"
    assert session.last_error == "stream_cancelled"
    partial = [m for m in session.messages if m.kind == "partial"]
    assert partial[0].content == '{"title": "Half'
    assert not runner.cancel_stream(USER, sid)


def test_mid_stream_failure_reports_partial_text():
    runner = make_runner([FakeStream(["Working on"], error=RateLimited("later"))])
    sid = scenario_until_query(runner)

    outcome = runner.handle(USER, sid, EventType.USER_TEXT, text="Log in with valid user")

    assert outcome.session.last_error == "rate_limited"
    assert outcome.session.messages[-2].content == "Working on"
    assert runner.streams.get(sid) is None


def test_save_failure_keeps_working_in_memory():
    class BrokenStore(InMemorySessionStore):
        def save(self, session):
            raise PersistenceError("disk full")

    runner = make_runner(sessions=BrokenStore())
    outcome = runner.start(USER, WorkflowKind.SCENARIO)
    assert PersistenceError.user_message in outcome.notices

    sid = outcome.session.session_id
    nxt = runner.handle(USER, sid, EventType.OPTION_SELECTED, option="pytest")
    assert nxt.session.phase == "selecting_module"
    assert nxt.notices == [PersistenceError.user_message]
    assert runner.get(USER, sid).artifact["framework"] == "pytest"


def test_duplicate_lookup_failure_does_not_stop_the_ticket():
    class OfflineTickets(InMemoryTicketGateway):
        def recent_tickets(self, owner_id, limit):
            raise OSError("tracker offline")

    runner = make_runner([ANALYSIS, STEPS], tickets=OfflineTickets())
    sid, _ = ticket_until_analysis(runner)
    runner.handle(USER, sid, EventType.USER_TEXT, text="Nothing happens")
    outcome = runner.handle(USER, sid, EventType.USER_TEXT, text="Dashboard opens")

    assert outcome.session.phase == "confirming"
    assert outcome.session.artifact["duplicates"] == []


def test_rejected_submission_fails_the_session():
    class ArchivedProject(InMemoryTicketGateway):
        def create_ticket(self, owner_id, artifact):
            raise SubmissionFailed("project archived", retryable=False)

    runner = make_runner([ANALYSIS, STEPS], tickets=ArchivedProject())
    sid, _ = ticket_until_analysis(runner)
    runner.handle(USER, sid, EventType.USER_TEXT, text="Nothing happens")
    runner.handle(USER, sid, EventType.USER_TEXT, text="Dashboard opens")
    outcome = runner.handle(USER, sid, EventType.OPTION_SELECTED, option="confirm")

    assert outcome.session.phase == "failed"
    assert outcome.session.status == SessionStatus.CANCELLED
    assert runner.list_history(USER) == []


def test_clients_cannot_post_internal_events():
    runner = make_runner()
    sid = runner.start(USER, WorkflowKind.XPATH).session.session_id
    with pytest.raises(ValidationFailed):
        runner.handle(USER, sid, EventType.AI_COMPLETED, text="```json\n{}\n```")


def test_sessions_are_private_to_their_owner():
    runner = make_runner()
    sid = runner.start(USER, WorkflowKind.XPATH).session.session_id
    with pytest.raises(SessionNotFound):
        runner.handle(OTHER, sid, EventType.OPTION_SELECTED, option="Login")
    with pytest.raises(SessionNotFound):
        runner.get(OTHER, sid)


def test_history_management_is_per_owner():
    runner = make_runner()
    entry = runner.history.append(USER.user_id, WorkflowKind.XPATH, "Login", "3 locators")
    runner.history.append(OTHER.user_id, WorkflowKind.XPATH, "Other", "1 locators")

    assert not runner.delete_history(OTHER, entry.entry_id)
    assert runner.delete_history(USER, entry.entry_id)
    assert runner.clear_history(OTHER) == 1
    assert runner.list_history(USER) == []


def saved_mid_request(store):
    """A snapshot written while the title analysis was still in flight."""
    runner = make_runner([RateLimited("slow down", status_code=429)], sessions=store)
    sid, outcome = ticket_until_analysis(runner)
    pending = PendingRequest(command="RequestCompletion", purpose="analyze_title")
    store.save(outcome.session.model_copy(update={"pending": pending, "last_error": None}))
    return sid


def test_restarted_runner_releases_request_left_in_flight():
    store = InMemorySessionStore()
    sid = saved_mid_request(store)

    restarted = make_runner([ANALYSIS], sessions=store)
    outcome = restarted.handle(USER, sid, EventType.RETRY)

    assert [c.name for c in outcome.commands] == ["RequestCompletion"]
    assert outcome.session.phase == "collecting_actual_result"
    assert outcome.session.artifact["module"] == "Login"
    assert outcome.session.pending is None
    assert store.load(sid, USER.user_id).pending is None


def test_reopened_session_offers_retry_for_interrupted_request():
    store = InMemorySessionStore()
    sid = saved_mid_request(store)

    session = make_runner(sessions=store).get(USER, sid)

    assert session.pending is None
    assert session.last_error == "interrupted"
    assert [o.value for o in session.messages[-1].options] == ["retry"]
    assert store.load(sid, USER.user_id).pending is None


def test_session_locks_are_released_after_use():
    runner = make_runner([RateLimited("slow down", status_code=429)])
    ticket_until_analysis(runner)
    for n in range(3):
        with pytest.raises(SessionNotFound):
            runner.get(USER, f"missing-{n}")
    assert runner._locks == {}


def test_completed_authorization_offers_retry_after_expired_sign_in():
    runner = make_runner([AuthExpired("token expired", status_code=401), ANALYSIS])
    sid, outcome = ticket_until_analysis(runner)
    assert outcome.session.last_error == "auth_expired"

    waiter = runner.begin_authorization(USER, sid, interval=0.01, timeout=5)
    assert runner.begin_authorization(USER, sid, interval=0.01, timeout=5) is waiter
    assert runner.complete_authorization(USER, sid)
    waiter.join(5)

    session = runner.get(USER, sid)
    assert session.messages[-1].content == "Authorization complete."
    assert [o.value for o in session.messages[-1].options] == ["retry"]
    assert session.last_error is None
    assert runner._waiters == {}
    assert not runner.complete_authorization(USER, sid)

    resumed = runner.handle(USER, sid, EventType.RETRY)
    assert resumed.session.phase == "collecting_actual_result"


def test_authorization_that_never_completes_times_out():
    runner = make_runner()
    sid = runner.start(USER, WorkflowKind.XPATH).session.session_id

    waiter = runner.begin_authorization(USER, sid, interval=0.01, timeout=0.05)
    waiter.join(5)

    session = runner.get(USER, sid)
    assert session.last_error == "auth_timeout"
    assert session.messages[-1].content.startswith("Authorization timed out")


def test_cancelled_authorization_leaves_session_untouched():
    runner = make_runner()
    sid = runner.start(USER, WorkflowKind.XPATH).session.session_id
    before = runner.get(USER, sid)

    waiter = runner.begin_authorization(USER, sid, interval=0.01, timeout=5)
    assert runner.cancel_authorization(USER, sid)
    waiter.join(5)

    assert not runner.complete_authorization(USER, sid)
    assert runner.get(USER, sid).messages == before.messages
    with pytest.raises(SessionNotFound):
        runner.begin_authorization(OTHER, sid)
