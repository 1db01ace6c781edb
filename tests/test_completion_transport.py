import pytest
import requests

from src.qapilot.config import GatewayConfig
from src.qapilot.domain.errors import AuthExpired, Malformed, ProviderUnavailable, QuotaExhausted, RateLimited
from src.qapilot.services.completion_transport import (
    BUFFERED,
    STREAMING,
    CompletionStream,
    CompletionTransport,
    classify_status,
)
from src.qapilot.services.prompt_builder import CompletionRequest


class FakeResponse:
    def __init__(self, status_code=200, body=None, lines=None, text="", line_error=None):
        self.status_code = status_code
        self._body = body
        self._lines = lines or []
        self.text = text
        self._line_error = line_error
        self.closed = False

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body

    def iter_lines(self):
        for line in self._lines:
            yield line
        if self._line_error is not None:
            raise self._line_error

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


CONFIG = GatewayConfig(base_url="https://gateway.test/v1/", api_key="secret-key", model="test-model")
REQUEST = CompletionRequest(model="test-model", messages=[{"role": "user", "content": "hi"}])


def _transport(outcome):
    session = FakeSession(outcome)
    return CompletionTransport(CONFIG, session=session), session


def _sse(*contents):
    lines = []
    for content in contents:
        lines.append(('data: {"choices": [{"delta": {"content": "%s"}}]}' % content).encode("utf-8"))
        lines.append(b"")
    return lines


def test_buffered_returns_message_content():
    resp = FakeResponse(body={"model": "served-model", "choices": [{"message": {"content": "Hello there"}}]})
    transport, session = _transport(resp)

    result = transport.send(REQUEST, BUFFERED)

    assert result.text == "Hello there"
    assert result.model == "served-model"
    url, kwargs = session.calls[0]
    assert url == "https://gateway.test/v1/chat/completions"
    assert kwargs["headers"]["Authorization"] == "Bearer secret-key"
    assert kwargs["json"]["stream"] is False
    assert kwargs["json"]["model"] == "test-model"
    assert kwargs["timeout"] == (CONFIG.connect_timeout, CONFIG.read_timeout)
    assert resp.closed


@pytest.mark.parametrize(
    "status, error",
    [(401, AuthExpired), (403, AuthExpired), (402, QuotaExhausted), (429, RateLimited), (500, ProviderUnavailable)],
)
def test_error_statuses_are_classified(status, error):
    resp = FakeResponse(status_code=status, body={"error": {"message": "nope"}})
    transport, _ = _transport(resp)

    with pytest.raises(error) as info:
        transport.send(REQUEST, BUFFERED)

    assert info.value.status_code == status
    assert info.value.detail == "nope"
    assert resp.closed


def test_classify_status_accepts_success():
    assert classify_status(204) is None


def test_network_error_is_provider_unavailable():
    transport, _ = _transport(requests.exceptions.ConnectionError("refused"))
    with pytest.raises(ProviderUnavailable):
        transport.send(REQUEST, BUFFERED)


def test_empty_completion_is_malformed():
    transport, _ = _transport(FakeResponse(body={"choices": [{"message": {"content": "  "}}]}))
    with pytest.raises(Malformed):
        transport.send(REQUEST, BUFFERED)


def test_non_json_body_is_malformed():
    transport, _ = _transport(FakeResponse(body=None, text="<html>"))
    with pytest.raises(Malformed):
        transport.send(REQUEST, BUFFERED)


def test_streaming_yields_fragments_until_done():
    lines = _sse("Hel", "lo") + [b": keep-alive", b"data: [DONE]"] + _sse("ignored")
    resp = FakeResponse(lines=lines)
    transport, session = _transport(resp)

    stream = transport.send(REQUEST, STREAMING)

    assert isinstance(stream, CompletionStream)
    assert session.calls[0][1]["stream"] is True
    assert session.calls[0][1]["json"]["stream"] is True
    assert list(stream) == ["Hel", "lo"]
    assert resp.closed
    with pytest.raises(RuntimeError):
        iter(stream)


def test_streaming_rate_limit_raises_before_any_fragment():
    transport, _ = _transport(FakeResponse(status_code=429, body={"error": "slow down"}))
    with pytest.raises(RateLimited):
        transport.send(REQUEST, STREAMING)


def test_stream_interruption_is_provider_unavailable():
    resp = FakeResponse(lines=_sse("part"), line_error=requests.exceptions.ChunkedEncodingError("reset"))
    transport, _ = _transport(resp)
    stream = transport.send(REQUEST, STREAMING)

    received = []
    with pytest.raises(ProviderUnavailable):
        for fragment in stream:
            received.append(fragment)
    assert received == ["part"]


def test_closed_stream_stops_quietly():
    resp = FakeResponse(lines=_sse("a", "b", "c"))
    transport, _ = _transport(resp)

    received = []
    with transport.send(REQUEST, STREAMING) as stream:
        for fragment in stream:
            received.append(fragment)
            stream.close()
    assert received == ["a"]
    assert resp.closed


def test_unknown_mode_is_rejected():
    transport, _ = _transport(FakeResponse(body={}))
    with pytest.raises(ValueError):
        transport.send(REQUEST, "batch")
