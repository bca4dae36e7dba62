# kv_store.py — Per-feature key-value storage
# Each feature (view preference, quick notes, pomodoro, ...) owns one JSON
# document per user. Routers talk to the KeyValueStore interface; the server
# binds it to the feature_state table, tests can use the in-memory backend.

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from models import FeatureState

# Feature keys
CURRENT_VIEW = "current_view"
QUICK_NOTES = "quick_notes"
POMODORO = "pomodoro"
BOARD_BACKGROUND = "board_background"
EMAIL_DIGEST = "email_digest"
TASK_REMINDERS = "task_reminders"
NOTIFICATION_SETTINGS = "notification_settings"

FEATURES = (
    CURRENT_VIEW, QUICK_NOTES, POMODORO, BOARD_BACKGROUND,
    EMAIL_DIGEST, TASK_REMINDERS, NOTIFICATION_SETTINGS,
)


class UnknownFeatureError(KeyError):
    pass


def _check_feature(feature: str) -> None:
    if feature not in FEATURES:
        raise UnknownFeatureError(feature)


class KeyValueStore(ABC):
    """Async JSON document store keyed by (owner_id, feature)"""

    @abstractmethod
    async def get(self, owner_id: str, feature: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, owner_id: str, feature: str, value: Any) -> None:
        ...

    @abstractmethod
    async def delete(self, owner_id: str, feature: str) -> bool:
        ...

    @abstractmethod
    async def items(self, feature: str) -> List[Tuple[str, Any]]:
        """All (owner_id, value) pairs stored for a feature"""
        ...


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._data: Dict[Tuple[str, str], Any] = {}

    async def get(self, owner_id: str, feature: str) -> Optional[Any]:
        _check_feature(feature)
        value = self._data.get((owner_id, feature))
        return copy.deepcopy(value)

    async def set(self, owner_id: str, feature: str, value: Any) -> None:
        _check_feature(feature)
        self._data[(owner_id, feature)] = copy.deepcopy(value)

    async def delete(self, owner_id: str, feature: str) -> bool:
        _check_feature(feature)
        return self._data.pop((owner_id, feature), None) is not None

    async def items(self, feature: str) -> List[Tuple[str, Any]]:
        _check_feature(feature)
        return [
            (owner, copy.deepcopy(value))
            for (owner, feat), value in self._data.items()
            if feat == feature
        ]


class DatabaseKeyValueStore(KeyValueStore):
    """Backed by the feature_state table. Writes commit immediately."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _row(self, owner_id: str, feature: str) -> Optional[FeatureState]:
        stmt = select(FeatureState).where(
            FeatureState.owner_id == owner_id,
            FeatureState.feature == feature,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, owner_id: str, feature: str) -> Optional[Any]:
        _check_feature(feature)
        row = await self._row(owner_id, feature)
        return row.value if row else None

    async def set(self, owner_id: str, feature: str, value: Any) -> None:
        _check_feature(feature)
        row = await self._row(owner_id, feature)
        if row is None:
            self.db.add(FeatureState(owner_id=owner_id, feature=feature, value=value))
        else:
            row.value = value
            flag_modified(row, "value")
        await self.db.commit()

    async def delete(self, owner_id: str, feature: str) -> bool:
        _check_feature(feature)
        result = await self.db.execute(
            delete(FeatureState).where(
                FeatureState.owner_id == owner_id,
                FeatureState.feature == feature,
            )
        )
        await self.db.commit()
        return (result.rowcount or 0) > 0

    async def items(self, feature: str) -> List[Tuple[str, Any]]:
        _check_feature(feature)
        stmt = select(FeatureState.owner_id, FeatureState.value).where(FeatureState.feature == feature)
        result = await self.db.execute(stmt)
        return [(owner, value) for owner, value in result.all()]
