from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from issuepilot.sessions import SessionStore


def test_session_store_last_write_wins() -> None:
    store = SessionStore()

    assert store.get(7) is None
    store.set(7, "sess-1")
    store.set(7, "sess-2")
    store.set(8, "sess-3")

    assert store.get(7) == "sess-2"
    assert store.get(8) == "sess-3"
    assert store.get(9) is None


def test_session_store_is_safe_across_threads() -> None:
    store = SessionStore()

    with ThreadPoolExecutor(max_workers=4) as executor:
        list(executor.map(lambda n: store.set(n, f"sess-{n}"), range(1, 201)))

    assert all(store.get(n) == f"sess-{n}" for n in range(1, 201))
