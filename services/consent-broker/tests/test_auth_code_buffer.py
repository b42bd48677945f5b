import threading

import pytest

from consent_broker.services.auth_code_buffer import AuthCodeBuffer


def test_empty_buffer() -> None:
    buffer = AuthCodeBuffer(capacity=3)

    assert buffer.latest() is None
    assert buffer.entries() == []
    assert len(buffer) == 0


def test_add_stamps_received_at_and_keeps_newest_first() -> None:
    buffer = AuthCodeBuffer(capacity=3)

    stored = buffer.add({"code": "a"})
    buffer.add({"code": "b"})

    assert "received_at" in stored
    assert buffer.latest()["code"] == "b"
    assert [e["code"] for e in buffer.entries()] == ["b", "a"]


def test_oldest_entries_are_overwritten_at_capacity() -> None:
    buffer = AuthCodeBuffer(capacity=3)
    for code in "abcde":
        buffer.add({"code": code})

    assert len(buffer) == 3
    assert [e["code"] for e in buffer.entries()] == ["e", "d", "c"]


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AuthCodeBuffer(capacity=0)


def test_concurrent_writers_never_exceed_capacity() -> None:
    buffer = AuthCodeBuffer(capacity=10)

    def writer(prefix: str) -> None:
        for i in range(200):
            buffer.add({"code": f"{prefix}-{i}"})

    threads = [threading.Thread(target=writer, args=(str(n),)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(buffer) == 10
    assert len(buffer.entries()) == 10
    assert all(entry is not None for entry in buffer.entries())
