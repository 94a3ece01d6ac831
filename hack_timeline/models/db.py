"""
SQLAlchemy ORM data models
"""

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger, Column, DateTime, ForeignKey, Index, Integer, String, Table, Text,
)
from sqlalchemy.orm import DeclarativeBase

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Tag(Base):
    __tablename__ = "tags"

    id = Column(_ID_TYPE, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False, unique=True)


class HackingInfo(Base):
    __tablename__ = "hacking_infos"

    id = Column(_ID_TYPE, primary_key=True, autoincrement=True)
    protocol = Column(String(256), nullable=False, default="")
    network = Column(String(128), nullable=False, default="")
    amount = Column(String(128), nullable=False, default="")
    tx_hash = Column(String(256), nullable=False, default="")
    report_time = Column(DateTime(timezone=True), nullable=False)
    message_id = Column(BigInteger, nullable=False, default=0)
    channel_username = Column(String(128), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_hacking_infos_channel_message", "channel_username", "message_id"),
    )


class TransferInfo(Base):
    __tablename__ = "transfer_infos"

    id = Column(_ID_TYPE, primary_key=True, autoincrement=True)
    token = Column(String(64), nullable=False, default="")
    amount = Column(String(128), nullable=False, default="")
    from_address = Column(Text, nullable=False, default="")
    to_address = Column(Text, nullable=False, default="")
    report_time = Column(DateTime(timezone=True), nullable=False)
    message_id = Column(BigInteger, nullable=False, default=0)
    channel_username = Column(String(128), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_transfer_infos_channel_message", "channel_username", "message_id"),
    )


hacking_info_tags = Table(
    "hacking_info_tags",
    Base.metadata,
    Column("info_id", ForeignKey("hacking_infos.id"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id"), primary_key=True),
    Index("ix_hacking_info_tags_tag_id", "tag_id"),
)

transfer_info_tags = Table(
    "transfer_info_tags",
    Base.metadata,
    Column("info_id", ForeignKey("transfer_infos.id"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id"), primary_key=True),
    Index("ix_transfer_info_tags_tag_id", "tag_id"),
)


class ChannelWatermark(Base):
    __tablename__ = "channel_watermarks"

    id = Column(_ID_TYPE, primary_key=True, autoincrement=True)
    kind = Column(String(32), nullable=False)
    channel_username = Column(String(128), nullable=False)
    last_message_id = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_channel_watermarks_kind_channel", "kind", "channel_username", unique=True),
    )
