"""
Activity Audit Log
==================

Nhật ký append-only cho mọi thay đổi của editor (Added / Edited / Deleted).
Bản ghi không bao giờ bị sửa hay xóa. Nếu có Redis thì mirror sang một list.
"""

import logging
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from schema import (
    ActivityLog,
    AuditAction,
    EntityType,
    User,
    Config,
)

logger = logging.getLogger(__name__)

SYSTEM_USER = User(id="system", name="System", email="")


class ActivityLogStore:
    """Audit sink: record() được gọi bởi KnowledgeBase sau mỗi thay đổi."""

    def __init__(self, redis_manager=None):
        self.redis = redis_manager
        self._entries: List[ActivityLog] = []

    def record(
        self,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: str,
        entity_name: str,
        actor: Optional[User] = None,
        changes: Optional[Dict[str, Any]] = None
    ) -> ActivityLog:
        actor = actor or SYSTEM_USER
        entry = ActivityLog(
            id=uuid.uuid4().hex,
            action=AuditAction(action),
            entity_type=EntityType(entity_type),
            entity_id=entity_id,
            entity_name=entity_name,
            user_id=actor.id,
            user_name=actor.name,
            timestamp=datetime.now(),
            changes=dict(changes) if changes else None,
        )
        self._entries.append(entry)
        logger.info(
            f"Audit: {entry.user_name} {entry.action.value} {entry.entity_type.value} "
            f"'{entry.entity_name}' ({entry.entity_id})"
        )
        self._mirror(entry)
        return entry

    @property
    def entries(self) -> Tuple[ActivityLog, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def filter(
        self,
        query: str = "",
        action: Optional[AuditAction] = None,
        entity_type: Optional[EntityType] = None
    ) -> List[ActivityLog]:
        """Tìm theo tên entity hoặc tên user; action/entity_type None = tất cả. Mới nhất trước."""
        needle = query.lower()
        results = [
            e for e in self._entries
            if (needle in e.entity_name.lower() or needle in e.user_name.lower())
            and (action is None or e.action == action)
            and (entity_type is None or e.entity_type == entity_type)
        ]
        # entries are appended chronologically
        return results[::-1]

    def latest(self, limit: int = Config.LATEST_UPDATES_LIMIT) -> List[ActivityLog]:
        return self.filter()[:limit]

    def _mirror(self, entry: ActivityLog) -> None:
        if self.redis is None or not self.redis.is_connected:
            return
        data = asdict(entry)
        data["action"] = entry.action.value
        data["entity_type"] = entry.entity_type.value
        data["timestamp"] = entry.timestamp.isoformat()
        self.redis.list_push(Config.AUDIT_REDIS_KEY, data)
        self.redis.list_trim(Config.AUDIT_REDIS_KEY, -Config.AUDIT_REDIS_MAX_ENTRIES, -1)
