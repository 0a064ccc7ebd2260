"""Explicit storage-key ↔ topic mapping.

Every synchronized collection lives under exactly one storage key.  Lookup is
table-driven: exact key first, then the longest registered key that prefixes
the requested one (so ``stacked-creators-list`` still resolves to
``creators``), then the default topic.  ``validate`` lets a composition root
reject keys that would only resolve through the default.
"""

from __future__ import annotations

from typing import Dict
from typing import Iterable
from typing import Mapping
from typing import Optional
from typing import Tuple

from stacked.models.enums import SyncTopic
from stacked.sync.errors import UnmappedStorageKeyError

DEFAULT_TOPIC = SyncTopic.SETTINGS

DEFAULT_KEY_TOPICS: Mapping[str, SyncTopic] = {
    "stacked-creators": SyncTopic.CREATORS,
    "stacked-content": SyncTopic.CONTENT,
    "stacked-categories": SyncTopic.CATEGORIES,
    "stacked-settings": SyncTopic.SETTINGS,
    "stacked-employees": SyncTopic.EMPLOYEES,
    "stacked-custom-strategies": SyncTopic.STRATEGIES,
}


class TopicRegistry:
    """Injective map from storage key to :class:`SyncTopic`."""

    def __init__(
        self,
        mapping: Optional[Mapping[str, SyncTopic]] = None,
        *,
        default: SyncTopic = DEFAULT_TOPIC,
    ):
        self.default = default
        self._by_key: Dict[str, SyncTopic] = {}
        self._by_topic: Dict[SyncTopic, str] = {}
        for key, topic in (mapping if mapping is not None else DEFAULT_KEY_TOPICS).items():
            self.register(key, topic)

    def register(self, key: str, topic: SyncTopic) -> None:
        topic = SyncTopic(topic)
        owner = self._by_topic.get(topic)
        if owner is not None and owner != key:
            raise ValueError(f"Topic '{topic.value}' is already mapped to key '{owner}'")
        self._by_key[key] = topic
        self._by_topic[topic] = key

    def _resolve(self, key: str) -> Tuple[SyncTopic, bool]:
        topic = self._by_key.get(key)
        if topic is not None:
            return topic, True
        prefixes = [k for k in self._by_key if key.startswith(k)]
        if prefixes:
            return self._by_key[max(prefixes, key=len)], True
        return self.default, False

    def topic_for(self, key: str) -> SyncTopic:
        return self._resolve(key)[0]

    def is_mapped(self, key: str) -> bool:
        return self._resolve(key)[1]

    def key_for(self, topic: SyncTopic) -> Optional[str]:
        return self._by_topic.get(SyncTopic(topic))

    def validate(self, keys: Iterable[str]) -> None:
        """Raise :class:`UnmappedStorageKeyError` for keys with no mapping."""
        missing = [k for k in keys if not self.is_mapped(k)]
        if missing:
            raise UnmappedStorageKeyError(missing)

    def items(self):
        return self._by_key.items()

    def __contains__(self, key: str) -> bool:
        return key in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)


_default_registry = TopicRegistry()


def map_key_to_topic(key: str, registry: Optional[TopicRegistry] = None) -> SyncTopic:
    """Return the topic a storage key belongs to."""
    return (registry or _default_registry).topic_for(key)


__all__ = [
    "DEFAULT_KEY_TOPICS",
    "DEFAULT_TOPIC",
    "TopicRegistry",
    "map_key_to_topic",
]
