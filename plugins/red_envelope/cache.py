import threading
from typing import Callable, Dict, List, Optional

from .models import Envelope


class EnvelopeCache:
    """
    Thread-safe in-memory map from envelope id to envelope.

    Values are frozen models, a state change (closing) swaps in a new object
    instead of mutating the cached one.
    """

    def __init__(self):
        self._data: Dict[str, Envelope] = {}
        self._lock = threading.Lock()

    def get(self, envelope_id: str) -> Optional[Envelope]:
        with self._lock:
            return self._data.get(envelope_id)

    def get_or_load(
        self, envelope_id: str, loader: Callable[[str], Optional[Envelope]]
    ) -> Optional[Envelope]:
        """Read-through: on a miss, load and remember the result"""
        envelope = self.get(envelope_id)
        if envelope is not None:
            return envelope

        envelope = loader(envelope_id)
        if envelope is None:
            return None
        with self._lock:
            # A concurrent closer may have stored a newer (closed) copy meanwhile
            cached = self._data.get(envelope_id)
            if cached is not None and cached.closed:
                return cached
            self._data[envelope_id] = envelope
            return envelope

    def put(self, envelope: Envelope) -> None:
        with self._lock:
            self._data[envelope.id] = envelope

    def mark_closed(self, envelope_id: str) -> Optional[Envelope]:
        with self._lock:
            envelope = self._data.get(envelope_id)
            if envelope is None:
                return None
            if not envelope.closed:
                envelope = envelope.model_copy(update={"closed": True})
                self._data[envelope_id] = envelope
            return envelope

    def remove(self, envelope_id: str) -> Optional[Envelope]:
        with self._lock:
            return self._data.pop(envelope_id, None)

    def evict(self, predicate: Callable[[Envelope], bool]) -> int:
        """Drop every entry matching ``predicate``, returns how many went"""
        with self._lock:
            stale = [key for key, envelope in self._data.items() if predicate(envelope)]
            for key in stale:
                del self._data[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def values(self) -> List[Envelope]:
        with self._lock:
            return list(self._data.values())

    def __contains__(self, envelope_id: str) -> bool:
        with self._lock:
            return envelope_id in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
