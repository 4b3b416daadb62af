from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any


class PreservationCategory(str, Enum):
    SESSION_MEMORIES = "session_memories"
    CONVERSATION_ENTRIES = "conversation_entries"
    LEARNING_INSIGHTS = "learning_insights"
    SAVED_REPORTS = "saved_reports"
    DASHBOARD_LAYOUT = "dashboard_layout"


@dataclass(slots=True)
class DataItem:
    identifier: str
    payload: dict[str, Any]


class UserDataStore(ABC):
    """Per-user storage the orchestrator reads and writes.

    Implementations raise ``DataStoreUnavailableError`` when the backing store
    cannot be reached.
    """

    @abstractmethod
    async def list_items(self, user_id: str, category: PreservationCategory) -> list[DataItem]:
        raise NotImplementedError

    @abstractmethod
    async def read_item(self, user_id: str, category: PreservationCategory, identifier: str) -> DataItem | None:
        raise NotImplementedError

    @abstractmethod
    async def write_item(self, user_id: str, category: PreservationCategory, identifier: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_tier(self, user_id: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def set_tier(self, user_id: str, tier: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def enabled_features(self, user_id: str) -> set[str]:
        raise NotImplementedError

    @abstractmethod
    async def set_feature_enabled(self, user_id: str, feature: str, enabled: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    async def archive_feature_data(self, user_id: str, feature: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def unarchive_feature_data(self, user_id: str, feature: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def get_quotas(self, user_id: str) -> dict[str, int]:
        raise NotImplementedError

    @abstractmethod
    async def set_quotas(self, user_id: str, quotas: dict[str, int]) -> None:
        raise NotImplementedError
