"""Pydantic models for the sync envelope and the presence endpoint."""

from __future__ import annotations

import json
from typing import Any
from typing import Optional
from typing import Tuple
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from stacked.models.enums import SyncAction
from stacked.models.enums import SyncTopic


class SyncEvent(BaseModel):
    """The unit of propagation between contexts.

    Python attribute names are descriptive; the aliases are the envelope keys
    written to storage and posted on the broadcast channel, so browser contexts
    of the same origin can read them too.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    topic: SyncTopic = Field(..., alias="type")
    action: SyncAction = SyncAction.UPDATE
    payload: Any = Field(None, alias="data")
    origin_id: str = Field(..., alias="userId")
    emitted_at: int = Field(..., alias="timestamp")

    @property
    def dedup_key(self) -> Tuple[str, int]:
        return (self.origin_id, self.emitted_at)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return json.dumps(self.to_wire())

    @classmethod
    def from_wire(cls, raw: Union[str, bytes, dict]) -> "SyncEvent":
        """Parse an envelope from storage or a channel message.

        Raises ``pydantic.ValidationError`` for malformed JSON as well as for
        well-formed JSON that is not a sync envelope.
        """
        if isinstance(raw, (str, bytes)):
            return cls.model_validate_json(raw)
        return cls.model_validate(raw)


class PresenceUpdate(BaseModel):
    """Body of ``POST /api/sync/status``."""

    clientId: Optional[str] = None
    action: Optional[str] = None


class PresenceStatus(BaseModel):
    success: bool = True
    connectedClients: int
    timestamp: str


class PresenceError(BaseModel):
    success: bool = False
    error: str
