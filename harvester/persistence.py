"""Database access for videos, the product cache, the blacklist and handles."""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from models import (
    BlacklistedProduct,
    CreatorHandle,
    HandleScrapeHistory,
    Hashtag,
    ShopProduct,
    ShopVideo,
    generate_uuid7,
)

LOGGER = logging.getLogger(__name__)

_PRODUCT_FIELDS = ("product_name", "product_image", "price", "shop_name")
_VIDEO_IMMUTABLE_FIELDS = {"aweme_id", "first_seen_at"}

_T = TypeVar("_T")

# Store calls run one at a time on this thread, off the event loop.
_STORE_EXECUTOR = ThreadPoolExecutor(max_workers=1, thread_name_prefix="harvest-store")


class StorePersistenceError(RuntimeError):
    """Raised when a store operation fails."""


@dataclass(slots=True)
class ProductMetadata:
    product_name: str = ""
    product_image: str = ""
    price: str = ""
    shop_name: str = ""

    def as_fields(self) -> dict[str, str]:
        return {
            "product_name": self.product_name,
            "product_image": self.product_image,
            "price": self.price,
            "shop_name": self.shop_name,
        }


@dataclass(slots=True)
class HandleRecord:
    username: str
    status: str = "active"
    total_videos_found: int = 0
    shop_videos_found: int = 0
    shop_ratio: float = 0.0
    consecutive_days_no_shop: int = 0
    consecutive_days_no_posts: int = 0
    last_scraped_at: Optional[datetime] = None


@dataclass(slots=True)
class ScrapeHistoryEntry:
    username: str
    videos_found: int = 0
    shop_videos_found: int = 0
    pages_scraped: int = 0
    success: bool = True
    error_message: Optional[str] = None


async def run_in_store_thread(func: Callable[..., _T], /, *args: Any, **kwargs: Any) -> _T:
    """Run a blocking store call on the store thread and await its result."""

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_STORE_EXECUTOR, functools.partial(func, *args, **kwargs))


def _dialect_insert(session: Session, model):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise StorePersistenceError(f"Unsupported database dialect '{dialect}'")


class HarvestStore:
    """Thin, idempotent wrapper around the relational store.

    Every write is an upsert or insert-if-absent so that overlapping or
    restarted cycles converge on the same state. SQLAlchemy failures are
    wrapped in :class:`StorePersistenceError`.
    """

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------ videos

    def upsert_videos(self, rows: Sequence[dict[str, Any]]) -> int:
        if not rows:
            return 0
        # ON CONFLICT rejects the same key twice in one statement; last one wins.
        deduped = {row["aweme_id"]: row for row in rows}
        values = list(deduped.values())
        try:
            with self._session_factory() as session:
                stmt = _dialect_insert(session, ShopVideo).values(values)
                update_columns = {
                    key: stmt.excluded[key]
                    for key in values[0].keys()
                    if key not in _VIDEO_IMMUTABLE_FIELDS and key not in _PRODUCT_FIELDS
                }
                update_columns["updated_at"] = func.now()
                stmt = stmt.on_conflict_do_update(index_elements=["aweme_id"], set_=update_columns)
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc
        return len(values)

    def products_missing_metadata(self, limit: int) -> list[str]:
        """Distinct product ids referenced by videos with any display field unset."""

        stmt = (
            select(ShopVideo.product_id)
            .where(ShopVideo.product_id.is_not(None))
            .where(or_(*(getattr(ShopVideo, name).is_(None) for name in _PRODUCT_FIELDS)))
            .distinct()
            .limit(limit)
        )
        try:
            with self._session_factory() as session:
                return [product_id for product_id in session.scalars(stmt) if product_id]
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def apply_product_metadata(self, product_id: str, metadata: ProductMetadata) -> int:
        stmt = (
            update(ShopVideo)
            .where(ShopVideo.product_id == product_id)
            .values(**metadata.as_fields())
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def delete_videos_for_product(self, product_id: str) -> int:
        stmt = (
            delete(ShopVideo)
            .where(ShopVideo.product_id == product_id)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def video_authors(self) -> set[str]:
        stmt = select(ShopVideo.username).where(ShopVideo.username.is_not(None)).distinct()
        try:
            with self._session_factory() as session:
                return {username for username in session.scalars(stmt) if username}
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    # ---------------------------------------------------------------- products

    def get_cached_product(self, product_id: str) -> ProductMetadata | None:
        try:
            with self._session_factory() as session:
                cached = session.get(ShopProduct, product_id)
                if cached is None:
                    return None
                return ProductMetadata(
                    product_name=cached.product_name or "",
                    product_image=cached.product_image or "",
                    price=cached.price or "",
                    shop_name=cached.shop_name or "",
                )
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def cache_product(self, product_id: str, metadata: ProductMetadata) -> None:
        """Write a cache entry unless one already exists; entries are never refreshed."""

        try:
            with self._session_factory() as session:
                stmt = (
                    _dialect_insert(session, ShopProduct)
                    .values(product_id=product_id, **metadata.as_fields())
                    .on_conflict_do_nothing(index_elements=["product_id"])
                )
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def blacklist_product(self, product_id: str, reason: str) -> None:
        try:
            with self._session_factory() as session:
                stmt = (
                    _dialect_insert(session, BlacklistedProduct)
                    .values(product_id=product_id, reason=reason)
                    .on_conflict_do_nothing(index_elements=["product_id"])
                )
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def blacklisted_among(self, product_ids: Iterable[str]) -> set[str]:
        candidates = {product_id for product_id in product_ids if product_id}
        if not candidates:
            return set()
        stmt = select(BlacklistedProduct.product_id).where(
            BlacklistedProduct.product_id.in_(sorted(candidates))
        )
        try:
            with self._session_factory() as session:
                return set(session.scalars(stmt))
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    # ----------------------------------------------------------------- sources

    def list_hashtags(self) -> list[str]:
        stmt = select(Hashtag.hashtag).order_by(Hashtag.created_at, Hashtag.hashtag)
        try:
            with self._session_factory() as session:
                return [tag for tag in session.scalars(stmt) if tag]
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def tracked_usernames(self) -> set[str]:
        try:
            with self._session_factory() as session:
                return set(session.scalars(select(CreatorHandle.username)))
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def insert_handles(self, usernames: Sequence[str], discovery_source: str) -> int:
        if not usernames:
            return 0
        values = [
            {"username": username, "status": "active", "discovery_source": discovery_source}
            for username in usernames
        ]
        try:
            with self._session_factory() as session:
                stmt = (
                    _dialect_insert(session, CreatorHandle)
                    .values(values)
                    .on_conflict_do_nothing(index_elements=["username"])
                )
                inserted = session.execute(stmt).rowcount
                session.commit()
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc
        return inserted

    def active_handles(self) -> list[HandleRecord]:
        """Active handles, best shop ratio first, then least recently scraped."""

        stmt = (
            select(CreatorHandle)
            .where(CreatorHandle.status == "active")
            .order_by(
                CreatorHandle.shop_ratio.desc(),
                CreatorHandle.last_scraped_at.asc().nulls_first(),
                CreatorHandle.username,
            )
        )
        try:
            with self._session_factory() as session:
                return [_handle_record(handle) for handle in session.scalars(stmt)]
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def get_handle(self, username: str) -> HandleRecord | None:
        try:
            with self._session_factory() as session:
                handle = session.get(CreatorHandle, username)
                return _handle_record(handle) if handle is not None else None
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def update_handle_status(self, username: str, status: str) -> None:
        stmt = (
            update(CreatorHandle)
            .where(CreatorHandle.username == username)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory() as session:
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def update_handle_stats(self, record: HandleRecord) -> None:
        stmt = (
            update(CreatorHandle)
            .where(CreatorHandle.username == record.username)
            .values(
                status=record.status,
                total_videos_found=record.total_videos_found,
                shop_videos_found=record.shop_videos_found,
                shop_ratio=record.shop_ratio,
                consecutive_days_no_shop=record.consecutive_days_no_shop,
                consecutive_days_no_posts=record.consecutive_days_no_posts,
                last_scraped_at=record.last_scraped_at,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory() as session:
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc

    def record_scrape_history(self, entry: ScrapeHistoryEntry) -> None:
        try:
            with self._session_factory() as session:
                session.add(
                    HandleScrapeHistory(
                        id=generate_uuid7(),
                        username=entry.username,
                        videos_found=entry.videos_found,
                        shop_videos_found=entry.shop_videos_found,
                        pages_scraped=entry.pages_scraped,
                        success=entry.success,
                        error_message=entry.error_message,
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise StorePersistenceError(str(exc)) from exc


def _handle_record(handle: CreatorHandle) -> HandleRecord:
    return HandleRecord(
        username=handle.username,
        status=handle.status,
        total_videos_found=handle.total_videos_found or 0,
        shop_videos_found=handle.shop_videos_found or 0,
        shop_ratio=handle.shop_ratio or 0.0,
        consecutive_days_no_shop=handle.consecutive_days_no_shop or 0,
        consecutive_days_no_posts=handle.consecutive_days_no_posts or 0,
        last_scraped_at=handle.last_scraped_at,
    )


__all__ = [
    "HandleRecord",
    "HarvestStore",
    "ProductMetadata",
    "ScrapeHistoryEntry",
    "StorePersistenceError",
    "run_in_store_thread",
]
