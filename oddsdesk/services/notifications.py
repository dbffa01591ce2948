"""
In-memory notification sink for bet events.

Public API:
  NotificationCenter.add(notification)   → bool  (dedupes by bet record id)
  NotificationCenter.unread_count        → int
  NotificationCenter.mark_as_read(id)    → None
  NotificationCenter.acknowledge()       → int   (clears the list)

Notifications are transient: nothing is persisted, and acknowledging (e.g.
visiting the bet summary) drops them all.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class NotificationKind:
    NEW_BET = "new-bet"
    SETTLED = "settled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Notification dataclass
# ---------------------------------------------------------------------------

@dataclass
class Notification:
    bet_record_id: int
    kind: str                 # new-bet | settled
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "bet_record_id": self.bet_record_id,
            "kind": self.kind,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------

class NotificationCenter:
    """
    Holds at most one notification per bet record id.

    A ``settled`` notification supersedes a ``new-bet`` notification for the
    same record that has not been acknowledged yet; any other repeat for an
    id already present is dropped.  This is the sink-side guard against a
    settlement being reported twice.
    """

    def __init__(self):
        self._items: Dict[int, Notification] = {}
        self._read: set = set()
        # survives acknowledge(): a record settles once per session
        self._settled_ids: set = set()

    def add(self, notification: Notification) -> bool:
        """Returns False when the notification was dropped as a duplicate."""
        rid = notification.bet_record_id
        if notification.kind == NotificationKind.SETTLED and rid in self._settled_ids:
            logger.warning("Duplicate settlement notification for bet record %d dropped", rid)
            return False
        existing = self._items.get(rid)
        if existing is not None:
            if existing.kind == NotificationKind.NEW_BET and notification.kind == NotificationKind.SETTLED:
                del self._items[rid]
                self._read.discard(rid)
            else:
                logger.warning(
                    "Duplicate %s notification for bet record %d dropped",
                    notification.kind, rid,
                )
                return False
        self._items[rid] = notification
        if notification.kind == NotificationKind.SETTLED:
            self._settled_ids.add(rid)
        logger.info("Notification queued: %s for bet record %d", notification.kind, rid)
        return True

    def notify_new_bet(self, bet_record_id: int, payload: Optional[Dict[str, Any]] = None) -> bool:
        return self.add(Notification(bet_record_id, NotificationKind.NEW_BET, payload or {}))

    def notify_settled(self, bet_record_id: int, payload: Optional[Dict[str, Any]] = None) -> bool:
        return self.add(Notification(bet_record_id, NotificationKind.SETTLED, payload or {}))

    @property
    def notifications(self) -> List[Notification]:
        """Newest first."""
        return sorted(self._items.values(), key=lambda n: n.created_at, reverse=True)

    @property
    def unread_count(self) -> int:
        return sum(1 for rid in self._items if rid not in self._read)

    def is_read(self, bet_record_id: int) -> bool:
        return bet_record_id in self._read

    def mark_as_read(self, bet_record_id: int) -> None:
        if bet_record_id in self._items:
            self._read.add(bet_record_id)

    def acknowledge(self) -> int:
        """Clear every notification.  Returns how many were cleared."""
        count = len(self._items)
        self._items.clear()
        self._read.clear()
        if count:
            logger.info("Acknowledged %d notification(s)", count)
        return count

    def __len__(self) -> int:
        return len(self._items)

    def to_dict(self) -> dict:
        return {
            "notifications": [
                dict(n.to_dict(), read=n.bet_record_id in self._read)
                for n in self.notifications
            ],
            "unread_count": self.unread_count,
        }
