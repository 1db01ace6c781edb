from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import GatewayConfig
from ..domain.errors import AuthExpired, Malformed, ProviderUnavailable, QuotaExhausted, RateLimited, TransportError
from .prompt_builder import CompletionRequest

LOG = logging.getLogger("qapilot.llm")

BUFFERED = "buffered"
STREAMING = "streaming"


def _build_session() -> requests.Session:
    session = requests.Session()
    # no automatic retries at any level
    retry = Retry(total=0, connect=0, read=0, status=0, redirect=0, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def classify_status(status: int, detail: Optional[str] = None) -> Optional[TransportError]:
    if 200 <= status < 300:
        return None
    if status in (401, 403):
        return AuthExpired(detail, status_code=status)
    if status == 429:
        return RateLimited(detail, status_code=status)
    if status == 402:
        return QuotaExhausted(detail, status_code=status)
    return ProviderUnavailable(detail, status_code=status)


def _error_detail(resp: requests.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "")[:200] or None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return err.get("message")
        if isinstance(err, str):
            return err
    return None


class CompletionResponse:
    def __init__(self, text: str, model: Optional[str] = None) -> None:
        self.text = text
        self.model = model

    def __repr__(self) -> str:
        return f"CompletionResponse(model={self.model!r}, chars={len(self.text)})"


class CompletionStream:
    """Lazy, finite, single-pass sequence of content fragments.

    ``close`` releases the underlying connection and may be called from any
    thread; iteration stops at the next line boundary.
    """

    def __init__(self, resp: requests.Response) -> None:
        self._resp = resp
        self._consumed = False
        self.closed = False

    def __iter__(self) -> Iterator[str]:
        if self._consumed:
            raise RuntimeError("completion stream can only be iterated once")
        self._consumed = True
        return self._fragments()

    def _fragments(self) -> Iterator[str]:
        try:
            for raw_line in self._resp.iter_lines():
                if self.closed:
                    break
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    LOG.debug("stream_line_unparsable", extra={"line": data[:80]})
                    continue
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield token
        except requests.exceptions.RequestException as exc:
            if self.closed:
                return
            raise ProviderUnavailable(f"stream interrupted: {exc}") from exc
        finally:
            self.close()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._resp.close()

    def __enter__(self) -> "CompletionStream":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class CompletionTransport:
    """Sends completion requests to an OpenAI-compatible gateway.

    Failures are classified into the transport error taxonomy and raised;
    nothing is retried here.
    """

    def __init__(self, config: Optional[GatewayConfig] = None, session: Optional[requests.Session] = None) -> None:
        self.config = config or GatewayConfig.from_env()
        self.base_url = self.config.base_url.rstrip("/")
        self._session = session or _build_session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _post(self, request: CompletionRequest, stream: bool) -> requests.Response:
        payload = request.model_copy(update={"stream": stream}).to_payload()
        try:
            resp = self._session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=(self.config.connect_timeout, self.config.read_timeout),
                stream=stream,
            )
        except requests.exceptions.RequestException as exc:
            LOG.warning("completion_network_error", extra={"model": request.model, "err": str(exc)})
            raise ProviderUnavailable(f"gateway unreachable: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            detail = _error_detail(resp)
            resp.close()
            err = classify_status(resp.status_code, detail)
            assert err is not None
            LOG.warning(
                "completion_failed",
                extra={"model": request.model, "status": resp.status_code, "code": err.code},
            )
            raise err
        return resp

    def send(self, request: CompletionRequest, mode: str = BUFFERED) -> Union[CompletionResponse, CompletionStream]:
        if mode == STREAMING:
            LOG.debug("completion_stream", extra={"model": request.model, "base_url": self.base_url})
            return CompletionStream(self._post(request, stream=True))
        if mode != BUFFERED:
            raise ValueError(f"unknown transport mode: {mode}")
        LOG.debug("completion_invoke", extra={"model": request.model, "base_url": self.base_url})
        resp = self._post(request, stream=False)
        try:
            data = resp.json()
        except ValueError as exc:
            raise Malformed("gateway returned a non-JSON body") from exc
        finally:
            resp.close()
        choices = data.get("choices") if isinstance(data, dict) else None
        content = ""
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content") or ""
        if not content.strip():
            raise Malformed("gateway returned an empty completion")
        return CompletionResponse(content, data.get("model") or request.model)
