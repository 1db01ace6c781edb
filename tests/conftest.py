import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_stores(monkeypatch, tmp_path):
    """Point file-backed stores at a temp dir and drop cached store singletons."""
    from src.qapilot.infrastructure import history_store, session_store

    monkeypatch.setenv("QAPILOT_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("QAPILOT_HISTORY_STORE_IMPL", raising=False)
    monkeypatch.delenv("QAPILOT_SESSION_STORE_IMPL", raising=False)
    history_store.reset_history_store()
    session_store.reset_session_store()
    yield
    history_store.reset_history_store()
    session_store.reset_session_store()
