"""
In-memory transcript store for a session.
The orchestration core only appends and updates items, checks for duplicates
and scans recent user turns.
"""

from typing import Dict, List, Optional
import uuid
import structlog

from schemas.session import TranscriptItem, TranscriptRole, TranscriptStatus

logger = structlog.get_logger()


class TranscriptStore:
    """Ordered transcript items keyed by backend item id."""

    def __init__(self):
        self._items: Dict[str, TranscriptItem] = {}

    def get(self, item_id: str) -> Optional[TranscriptItem]:
        return self._items.get(item_id)

    def has_terminal(self, item_id: str) -> bool:
        """True if the item was recorded and is no longer in progress."""
        item = self._items.get(item_id)
        return item is not None and item.status != TranscriptStatus.IN_PROGRESS

    def add_message(
        self,
        item_id: str,
        role: TranscriptRole,
        text: str,
        agent_name: Optional[str] = None,
        hidden: bool = False,
    ) -> TranscriptItem:
        item = self._items.get(item_id)
        if item is not None:
            item.text = text or item.text
            return item
        item = TranscriptItem(item_id=item_id, role=role, text=text, agent_name=agent_name, hidden=hidden)
        self._items[item_id] = item
        return item

    def add_system_message(self, text: str) -> TranscriptItem:
        item = self.add_message(f"sys_{uuid.uuid4().hex[:12]}", TranscriptRole.SYSTEM, text)
        item.status = TranscriptStatus.DONE
        return item

    def update_message(self, item_id: str, text: str, append: bool = False) -> bool:
        item = self._items.get(item_id)
        if item is None:
            return False
        item.text = item.text + text if append else text
        return True

    def set_status(self, item_id: str, status: TranscriptStatus) -> bool:
        item = self._items.get(item_id)
        if item is None:
            return False
        item.status = status
        return True

    def items(self, include_hidden: bool = False) -> List[TranscriptItem]:
        return [i for i in self._items.values() if include_hidden or not i.hidden]

    def recent_user_texts(self, limit: int = 5) -> List[str]:
        texts = [
            i.text for i in self._items.values()
            if i.role == TranscriptRole.USER and not i.hidden and i.text
        ]
        return texts[-limit:]

    def last_agent_name(self) -> Optional[str]:
        for item in reversed(list(self._items.values())):
            if item.role == TranscriptRole.ASSISTANT and item.agent_name:
                return item.agent_name
        return None

    def __len__(self) -> int:
        return len(self._items)
