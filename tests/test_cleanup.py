"""
tests/test_cleanup.py -- The retention sweep wired into the API lifespan (api/main.py).

Covers:
  - run_cleanup(): both sweeps run and their counts are returned
  - _cleanup_loop(): sweeps in a worker thread, not on the event loop thread,
    and stops cleanly on cancel
"""

from __future__ import annotations

import asyncio
import threading
from types import SimpleNamespace

import pytest

import api.main as api_main
from audit.store import audit_logs
from auth.sessions import refresh_tokens
from core.database import iso_offset


def test_run_cleanup_returns_both_counts(env) -> None:
    user = env.create_user()
    stale = env.refresh_manager.issue(user.id)
    env.audit_log.append(1, user, "member_added", "member")
    with env.engine.begin() as conn:
        conn.execute(refresh_tokens.update().where(refresh_tokens.c.id == stale.id).values(expires_at=iso_offset(days=-1)))
        conn.execute(audit_logs.update().values(created_at=iso_offset(days=-400)))

    app = SimpleNamespace(state=SimpleNamespace(refresh_manager=env.refresh_manager, audit_log=env.audit_log))
    assert api_main.run_cleanup(app) == (1, 1)


def test_cleanup_loop_sweeps_off_the_event_loop(monkeypatch) -> None:
    sweep_threads: list[int] = []

    def fake_cleanup(app):
        sweep_threads.append(threading.get_ident())
        return 0, 0

    monkeypatch.setattr(api_main, "run_cleanup", fake_cleanup)

    async def run() -> int:
        task = asyncio.create_task(api_main._cleanup_loop(SimpleNamespace(), 3600))
        while not sweep_threads:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return threading.get_ident()

    loop_thread = asyncio.run(run())
    assert len(sweep_threads) == 1
    assert sweep_threads[0] != loop_thread
