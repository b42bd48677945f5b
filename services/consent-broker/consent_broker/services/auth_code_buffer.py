from __future__ import annotations
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class AuthCodeBuffer:
    """Fixed-capacity ring of recently captured authorization codes (debug aid).

    Slots are preallocated; `_next` is the index the next entry is written to,
    so the newest entry always sits just behind it.
    """

    def __init__(self, capacity: int = 50) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._slots: List[Optional[Dict[str, Any]]] = [None] * capacity
        self._next = 0
        self._size = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def add(self, record: Dict[str, Any]) -> Dict[str, Any]:
        entry = {**record, "received_at": datetime.now(timezone.utc).isoformat()}
        with self._lock:
            self._slots[self._next] = entry
            self._next = (self._next + 1) % len(self._slots)
            self._size = min(self._size + 1, len(self._slots))
        return entry

    def latest(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            if not self._size:
                return None
            return self._slots[(self._next - 1) % len(self._slots)]

    def entries(self) -> List[Dict[str, Any]]:
        """Newest first."""
        with self._lock:
            cap = len(self._slots)
            return [self._slots[(self._next - 1 - i) % cap] for i in range(self._size)]

    def __len__(self) -> int:
        with self._lock:
            return self._size
