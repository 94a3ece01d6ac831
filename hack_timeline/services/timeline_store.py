"""
Timeline store - async SQLAlchemy repository for tagged records and channel watermarks
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import event, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from hack_timeline.config.settings import settings
from hack_timeline.models.db import Base, ChannelWatermark, Tag
from hack_timeline.models.errors import StoreError
from hack_timeline.models.record_kind import RECORD_KINDS, RecordKind, get_record_kind

logger = logging.getLogger(__name__)


def normalize_tag_names(tag_names: Optional[Iterable[str]]) -> List[str]:
    """Lowercase, strip and de-duplicate tag names, keeping first-seen order."""
    out: List[str] = []
    for name in tag_names or []:
        cleaned = str(name or "").strip().lower()
        if cleaned and cleaned not in out:
            out.append(cleaned)
    return out


class TimelineRepository:
    """Async repository for hacking/transfer records, tags and watermarks"""

    def __init__(self, db_url: Optional[str] = None):
        url = db_url or settings.database.url
        self._engine = create_async_engine(url, echo=settings.database.echo)
        if url.startswith("sqlite"):
            self._install_sqlite_transaction_hooks()
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False,
        )

    def _install_sqlite_transaction_hooks(self):
        # pysqlite/aiosqlite defer BEGIN, which breaks SAVEPOINT handling
        @event.listens_for(self._engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(self._engine.sync_engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

    async def init_db(self):
        """Create all tables"""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized")

    async def close(self):
        await self._engine.dispose()

    # --- Records ---

    async def list_by_tags(
        self,
        kind: str,
        tag_names: Optional[List[str]],
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Most recent `limit` records whose tags intersect `tag_names` (all records when empty)."""
        return await self.list_by_tags_before(kind, tag_names, cursor_id=0, limit=limit)

    async def list_by_tags_before(
        self,
        kind: str,
        tag_names: Optional[List[str]],
        cursor_id: int,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """
        Same as list_by_tags, restricted to ids strictly below `cursor_id`.
        A cursor <= 0 means no bound.
        """
        record_kind = get_record_kind(kind)
        model = record_kind.model
        names = normalize_tag_names(tag_names)
        if limit <= 0:
            return []

        stmt = select(model)
        if names:
            join = record_kind.join_table
            matching_ids = (
                select(join.c.info_id)
                .join(Tag, Tag.id == join.c.tag_id)
                .where(Tag.name.in_(names))
            )
            stmt = stmt.where(model.id.in_(matching_ids))
        if cursor_id and cursor_id > 0:
            stmt = stmt.where(model.id < cursor_id)
        stmt = stmt.order_by(model.id.desc()).limit(limit)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                if not rows:
                    return []
                tags_by_id = await self._load_tags(session, record_kind, [r.id for r in rows])
        except SQLAlchemyError as e:
            raise StoreError(f"failed to select {record_kind.name} infos: {e}") from e

        return [self._record_to_dict(record_kind, r, tags_by_id.get(r.id, [])) for r in rows]

    async def _load_tags(
        self,
        session: AsyncSession,
        record_kind: RecordKind,
        info_ids: List[int],
    ) -> Dict[int, List[Dict[str, Any]]]:
        # Second query instead of a join keeps one row per record in the page
        join = record_kind.join_table
        stmt = (
            select(Tag.id, Tag.name, join.c.info_id)
            .join(join, Tag.id == join.c.tag_id)
            .where(join.c.info_id.in_(info_ids))
            .order_by(Tag.name)
        )
        tags_by_id: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
        for tag_id, name, info_id in (await session.execute(stmt)).all():
            tags_by_id[info_id].append({"id": tag_id, "name": name})
        return tags_by_id

    async def insert_record(
        self,
        kind: str,
        record: Dict[str, Any],
        tag_names: Optional[List[str]],
    ) -> int:
        """
        Insert one record with its tags in a single transaction and return its id.
        Missing tags are created; any failure rolls the whole insert back.
        """
        record_kind = get_record_kind(kind)
        payload = self._record_payload(record_kind, record)
        names = normalize_tag_names(tag_names)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    info = record_kind.model(**payload)
                    session.add(info)
                    await session.flush()
                    tag_ids = [await self._resolve_tag_id(session, name) for name in names]
                    await self._link_tags(session, record_kind, info.id, tag_ids)
                return info.id
        except SQLAlchemyError as e:
            raise StoreError(f"failed to store {record_kind.name} info: {e}") from e

    async def _find_tag_id(self, session: AsyncSession, name: str) -> Optional[int]:
        result = await session.execute(select(Tag.id).where(Tag.name == name))
        return result.scalar_one_or_none()

    async def _resolve_tag_id(self, session: AsyncSession, name: str) -> int:
        tag_id = await self._find_tag_id(session, name)
        if tag_id is not None:
            return tag_id
        try:
            async with session.begin_nested():
                result = await session.execute(insert(Tag).values(name=name).returning(Tag.id))
                return result.scalar_one()
        except IntegrityError:
            # A concurrent insert created the same tag first
            logger.debug("Tag %s created concurrently, looking it up", name)
        tag_id = await self._find_tag_id(session, name)
        if tag_id is None:
            raise StoreError(f"tag {name} vanished after insert conflict")
        return tag_id

    async def _link_tags(
        self,
        session: AsyncSession,
        record_kind: RecordKind,
        info_id: int,
        tag_ids: List[int],
    ) -> None:
        if not tag_ids:
            return
        rows = [{"info_id": info_id, "tag_id": tag_id} for tag_id in dict.fromkeys(tag_ids)]
        await session.execute(insert(record_kind.join_table), rows)

    async def count_records(self, kind: str) -> int:
        model = get_record_kind(kind).model
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(model.id)))
            return int(result.scalar() or 0)

    # --- Tags ---

    async def list_all_tags(self) -> List[Dict[str, Any]]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(Tag.id, Tag.name).order_by(Tag.name))
                return [{"id": tag_id, "name": name} for tag_id, name in result.all()]
        except SQLAlchemyError as e:
            raise StoreError(f"failed to list tags: {e}") from e

    # --- Watermarks ---

    async def get_watermark(self, kind: str, channel_username: str) -> Optional[Dict[str, Any]]:
        """Return the channel's watermark row, or None when the channel was never seen."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChannelWatermark).where(
                    ChannelWatermark.kind == kind,
                    ChannelWatermark.channel_username == channel_username,
                )
            )
            row = result.scalar_one_or_none()
            if not row:
                return None
            return {
                "kind": row.kind,
                "channel_username": row.channel_username,
                "last_message_id": int(row.last_message_id or 0),
                "updated_at": row.updated_at.isoformat() if row.updated_at else None,
            }

    async def insert_watermark(self, kind: str, channel_username: str, last_message_id: int = 0) -> None:
        try:
            async with self._session_factory() as session:
                session.add(ChannelWatermark(
                    kind=kind,
                    channel_username=channel_username,
                    last_message_id=int(last_message_id),
                ))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"failed to store watermark for {channel_username}: {e}") from e

    async def update_watermark(self, kind: str, channel_username: str, last_message_id: int) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(ChannelWatermark)
                    .where(
                        ChannelWatermark.kind == kind,
                        ChannelWatermark.channel_username == channel_username,
                    )
                    .values(
                        last_message_id=int(last_message_id),
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"failed to update watermark for {channel_username}: {e}") from e

    async def list_watermarks(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            stmt = select(ChannelWatermark).order_by(
                ChannelWatermark.kind, ChannelWatermark.channel_username,
            )
            if kind:
                stmt = stmt.where(ChannelWatermark.kind == kind)
            rows = (await session.execute(stmt)).scalars().all()
            return [
                {
                    "kind": r.kind,
                    "channel_username": r.channel_username,
                    "last_message_id": int(r.last_message_id or 0),
                }
                for r in rows
            ]

    # --- Stats ---

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {}
        async with self._session_factory() as session:
            for name, record_kind in RECORD_KINDS.items():
                result = await session.execute(select(func.count(record_kind.model.id)))
                stats[f"total_{name}_infos"] = int(result.scalar() or 0)
            result = await session.execute(select(func.count(Tag.id)))
            stats["total_tags"] = int(result.scalar() or 0)
        stats["watermarks"] = await self.list_watermarks()
        return stats

    # --- Helpers ---

    @staticmethod
    def _to_utc_dt(value: Any) -> datetime:
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        text = str(value or "").strip()
        if not text:
            return datetime.now(timezone.utc)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    def _record_payload(self, record_kind: RecordKind, record: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            name: str(record.get(name) or "") for name in record_kind.fields
        }
        payload["report_time"] = self._to_utc_dt(record.get("report_time"))
        payload["message_id"] = int(record.get("message_id") or 0)
        payload["channel_username"] = str(record.get("channel_username") or "")
        return payload

    def _record_to_dict(self, record_kind: RecordKind, row, tags: List[Dict[str, Any]]) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": row.id}
        for name in record_kind.fields:
            data[name] = getattr(row, name)
        report_time = row.report_time
        if report_time is not None and report_time.tzinfo is None:
            report_time = report_time.replace(tzinfo=timezone.utc)
        data["report_time"] = report_time.isoformat() if report_time else None
        data["message_id"] = int(row.message_id or 0)
        data["channel_username"] = row.channel_username
        data["tags"] = list(tags)
        return data
