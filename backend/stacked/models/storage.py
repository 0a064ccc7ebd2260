"""Row model backing :class:`stacked.sync.storage.SqlStore`."""

from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.sql import func

from stacked.database import Base


class StorageEntry(Base):
    """One key of the persistent local store.

    Values are opaque strings (JSON documents written by the sync core); the
    table never interprets them.
    """

    __tablename__ = "local_storage"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)

    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
