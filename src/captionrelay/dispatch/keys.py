"""
Round-robin API key selection per channel.
"""

import threading

from captionrelay.types import Channel


class KeyRotator:
    """
    Cycles through a channel's non-empty keys, one per call.

    Cursors live in this instance only, keyed by channel id. Advancing is
    done under a lock so concurrent dispatches never skip or repeat a
    position.
    """

    def __init__(self):
        self._cursors: dict[str, int] = {}
        self._lock = threading.Lock()

    def next_key(self, channel: Channel) -> str:
        """Return the next key for the channel, or "" if it has none."""
        keys = channel.usable_keys()
        if not keys:
            return ""
        with self._lock:
            current = self._cursors.get(channel.id, 0) % len(keys)
            self._cursors[channel.id] = (current + 1) % len(keys)
        return keys[current]

    def reset(self, channel_id: str | None = None) -> None:
        """Forget one channel's cursor, or all of them."""
        with self._lock:
            if channel_id is None:
                self._cursors.clear()
            else:
                self._cursors.pop(channel_id, None)
