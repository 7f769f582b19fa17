from typing import Dict, List, Optional

from .messages import Call, UnknownMessageError


class Outbox:
    """Outstanding CALLs of one station, keyed by message id."""

    def __init__(self):
        self._pending: Dict[str, Call] = {}

    def enqueue(self, call: Call) -> None:
        # ids are uuid4, a collision silently replaces the older call
        self._pending[call.unique_id] = call

    def take(self, message_id: str) -> Call:
        try:
            return self._pending.pop(message_id)
        except KeyError:
            raise UnknownMessageError(message_id) from None

    def discard(self, message_id: str) -> Optional[Call]:
        return self._pending.pop(message_id, None)

    def clear(self) -> List[Call]:
        """Drop every outstanding call and return them in send order."""
        calls = list(self._pending.values())
        self._pending.clear()
        return calls

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
