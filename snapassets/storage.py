"""Asset records (SQLAlchemy) and image blobs (local media directory)."""

import logging
import re
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import DateTime, Float, String, Text, UniqueConstraint, create_engine, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .config import (
    DATABASE_URL,
    DUPLICATE_VALUE_TOLERANCE,
    DUPLICATE_WINDOW_SECONDS,
    MEDIA_BASE_URL,
    MEDIA_DIR,
)
from .models import (
    CATEGORIES,
    CONDITIONS,
    DEFAULT_CURRENCY,
    Asset,
    CategoryStats,
    DeleteReport,
    EstimatedValue,
    InventoryStats,
    ItemAnalysis,
)

logger = logging.getLogger(__name__)

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9@._-]{1,128}$")

_IMAGE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
}

# Columns a manual edit may touch.
_EDITABLE = {
    "name",
    "category",
    "brand",
    "model",
    "serial",
    "condition",
    "description",
    "room",
    "image_url",
}
_REQUIRED = {"name", "category", "condition"}
_NOT_NULL = {"description", "image_url"}


class Base(DeclarativeBase):
    pass


class AssetRow(Base):
    __tablename__ = "assets"
    __table_args__ = (UniqueConstraint("user_id", "content_hash", name="uq_assets_user_content"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    name: Mapped[str] = mapped_column(String(255))
    category: Mapped[str] = mapped_column(String(32), default="other")
    brand: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    serial: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    condition: Mapped[str] = mapped_column(String(16), default="good")
    value_amount: Mapped[float] = mapped_column(Float, default=0.0)
    value_currency: Mapped[str] = mapped_column(String(8), default=DEFAULT_CURRENCY)
    description: Mapped[str] = mapped_column(Text, default="")
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    room: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    image_url: Mapped[str] = mapped_column(String(1024), default="")
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

    def to_asset(self) -> Asset:
        return Asset(
            id=self.id,
            user_id=self.user_id,
            name=self.name,
            category=self.category,
            brand=self.brand,
            model=self.model,
            serial=self.serial,
            condition=self.condition,
            estimated_value=EstimatedValue(amount=self.value_amount, currency=self.value_currency),
            description=self.description or "",
            confidence=self.confidence,
            room=self.room,
            image_url=self.image_url or "",
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class AssetNotFound(Exception):
    pass


def _utcnow() -> datetime:
    # stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def safe_segment(value: str, what: str = "id") -> str:
    if not value or value in (".", "..") or not _SAFE_SEGMENT.match(value):
        raise ValueError(f"Invalid {what}: {value!r}")
    return value


class AssetStore:
    def __init__(
        self,
        database_url: str = DATABASE_URL,
        media_dir: str = MEDIA_DIR,
        media_base_url: str = MEDIA_BASE_URL,
        duplicate_window_seconds: int = DUPLICATE_WINDOW_SECONDS,
        duplicate_value_tolerance: float = DUPLICATE_VALUE_TOLERANCE,
    ):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        self.media_dir = Path(media_dir)
        self.media_base_url = media_base_url.rstrip("/")
        self.duplicate_window = timedelta(seconds=duplicate_window_seconds)
        self.duplicate_value_tolerance = duplicate_value_tolerance
        Base.metadata.create_all(self.engine)
        self.media_dir.mkdir(parents=True, exist_ok=True)

    # ---------------- Records ----------------
    def _find_recent_duplicate(self, session: Session, user_id: str, analysis: ItemAnalysis) -> Optional[AssetRow]:
        since = _utcnow() - self.duplicate_window
        candidates = session.execute(
            select(AssetRow)
            .where(
                AssetRow.user_id == user_id,
                AssetRow.name == analysis.name,
                AssetRow.category == analysis.category,
                AssetRow.created_at >= since,
            )
            .order_by(AssetRow.created_at.desc())
        ).scalars().all()
        amount = analysis.estimated_value.amount
        for row in candidates:
            if abs((row.value_amount or 0.0) - amount) <= self.duplicate_value_tolerance:
                return row
        return None

    def _find_by_hash(self, session: Session, user_id: str, content_hash: str) -> Optional[AssetRow]:
        return session.execute(
            select(AssetRow).where(AssetRow.user_id == user_id, AssetRow.content_hash == content_hash)
        ).scalar_one_or_none()

    def save_asset(
        self,
        user_id: str,
        analysis: ItemAnalysis,
        content_hash: Optional[str] = None,
    ) -> Tuple[str, bool]:
        """
        Insert one record for an analyzed image.
        Returns (asset_id, created). created is False when an existing record
        was recognised as the same item: same image bytes for this user, or
        same name and category within the duplicate window with a value
        within the tolerance.
        """
        safe_segment(user_id, "user id")
        session: Session = self.SessionLocal()
        try:
            if content_hash:
                existing = self._find_by_hash(session, user_id, content_hash)
                if existing:
                    logger.debug("[save_asset]: same image already stored as %s", existing.id)
                    return existing.id, False
            existing = self._find_recent_duplicate(session, user_id, analysis)
            if existing:
                logger.info(
                    "[save_asset]: recent duplicate %s for %r (%s)",
                    existing.id,
                    analysis.name,
                    analysis.category,
                )
                return existing.id, False

            now = _utcnow()
            row = AssetRow(
                id=uuid4().hex,
                user_id=user_id,
                name=analysis.name,
                category=analysis.category,
                brand=analysis.brand,
                model=analysis.model,
                serial=analysis.serial,
                condition=analysis.condition,
                value_amount=analysis.estimated_value.amount,
                value_currency=analysis.estimated_value.currency,
                description=analysis.description,
                confidence=analysis.confidence,
                room=analysis.room,
                image_url="",
                content_hash=content_hash,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # a concurrent save of the same image won the unique constraint
                session.rollback()
                winner = self._find_by_hash(session, user_id, content_hash) if content_hash else None
                if winner is None:
                    raise
                return winner.id, False
            logger.info("[save_asset]: created %s for user %s", row.id, user_id)
            return row.id, True
        finally:
            session.close()

    def _get_row(self, session: Session, user_id: str, asset_id: str) -> AssetRow:
        row = session.execute(
            select(AssetRow).where(AssetRow.user_id == user_id, AssetRow.id == asset_id)
        ).scalar_one_or_none()
        if row is None:
            raise AssetNotFound(asset_id)
        return row

    def get_asset(self, user_id: str, asset_id: str) -> Asset:
        session: Session = self.SessionLocal()
        try:
            return self._get_row(session, user_id, asset_id).to_asset()
        finally:
            session.close()

    def update_asset(self, user_id: str, asset_id: str, fields: Dict[str, Any]) -> Asset:
        """Merge a partial field set; updated_at always moves forward, created_at never changes."""
        session: Session = self.SessionLocal()
        try:
            row = self._get_row(session, user_id, asset_id)
            for key, value in fields.items():
                if key == "estimated_value":
                    if value is None:
                        continue
                    ev = EstimatedValue.coerce(value)
                    row.value_amount = ev.amount
                    row.value_currency = ev.currency
                elif key in _EDITABLE:
                    if key in _REQUIRED and not value:
                        raise ValueError(f"{key} cannot be empty")
                    if key == "category" and value not in CATEGORIES:
                        raise ValueError(f"Unknown category: {value}")
                    if key == "condition" and value not in CONDITIONS:
                        raise ValueError(f"Unknown condition: {value}")
                    if key == "image_url" and value and self.owned_blob_path(user_id, asset_id, value) is None:
                        raise ValueError("Image URL does not belong to this asset")
                    setattr(row, key, value if value is not None or key not in _NOT_NULL else "")
                else:
                    raise ValueError(f"Field cannot be updated: {key}")
            now = _utcnow()
            if now <= row.updated_at:
                now = row.updated_at + timedelta(microseconds=1)
            row.updated_at = now
            session.commit()
            session.refresh(row)
            return row.to_asset()
        finally:
            session.close()

    def list_assets(
        self,
        user_id: str,
        search: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[Asset]:
        """Newest first, optionally filtered by a name/brand/model search and a category."""
        session: Session = self.SessionLocal()
        try:
            stmt = select(AssetRow).where(AssetRow.user_id == user_id)
            if category and category != "all":
                stmt = stmt.where(AssetRow.category == category)
            if search:
                term = f"%{search.strip().lower()}%"
                stmt = stmt.where(
                    or_(
                        func.lower(AssetRow.name).like(term),
                        func.lower(AssetRow.brand).like(term),
                        func.lower(AssetRow.model).like(term),
                    )
                )
            stmt = stmt.order_by(AssetRow.created_at.desc(), AssetRow.id.desc())
            return [row.to_asset() for row in session.execute(stmt).scalars().all()]
        finally:
            session.close()

    def inventory_stats(self, user_id: str) -> InventoryStats:
        stats = InventoryStats()
        for asset in self.list_assets(user_id):
            amount = asset.estimated_value.amount
            stats.count += 1
            stats.total_value += amount
            bucket = stats.by_category.setdefault(asset.category, CategoryStats())
            bucket.count += 1
            bucket.value += amount
        return stats

    def delete_asset(self, user_id: str, asset_id: str) -> DeleteReport:
        """
        Remove the record, then its uploaded image.
        A failed image removal is reported, not raised: the record is already gone.
        """
        session: Session = self.SessionLocal()
        try:
            row = self._get_row(session, user_id, asset_id)
            image_url = row.image_url
            session.delete(row)
            session.commit()
        finally:
            session.close()

        report = DeleteReport(asset_id=asset_id, record_deleted=True, image_deleted=False)
        if not image_url:
            return report
        blob = self.owned_blob_path(user_id, asset_id, image_url)
        if blob is None:
            logger.warning("[delete_asset]: %s points at an image it does not own: %s", asset_id, image_url)
            report.image_error = "Image is not stored under this asset"
            return report
        try:
            blob.unlink()
            report.image_deleted = True
        except FileNotFoundError:
            report.image_deleted = True
        except OSError as e:
            logger.warning("[delete_asset]: image cleanup failed for %s: %s", asset_id, e)
            report.image_error = str(e)
        return report

    # ---------------- Blobs ----------------
    def upload_image(
        self,
        user_id: str,
        asset_id: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> str:
        """Write the original image under the user's namespace and return its URL."""
        safe_segment(user_id, "user id")
        safe_segment(asset_id, "asset id")
        ext = _IMAGE_EXTENSIONS.get((content_type or "").lower(), "")
        relative = f"users/{user_id}/assets/images/{asset_id}-{int(time.time() * 1000)}{ext}"
        path = self.media_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug("[upload_image]: wrote %d bytes to %s", len(data), relative)
        return f"{self.media_base_url}/{relative}"

    def blob_path_for_url(self, url: Optional[str]) -> Optional[Path]:
        """Local file behind one of our image URLs; None for empty or foreign URLs."""
        if not url or not url.startswith(self.media_base_url + "/"):
            return None
        relative = url[len(self.media_base_url) + 1:]
        root = self.media_dir.resolve()
        path = (self.media_dir / relative).resolve()
        if root not in path.parents:
            return None
        return path

    def owned_blob_path(self, user_id: str, asset_id: str, url: Optional[str]) -> Optional[Path]:
        """Blob path for url only if it sits in this user's image folder and is named for this asset."""
        path = self.blob_path_for_url(url)
        if path is None:
            return None
        folder = (self.media_dir / "users" / user_id / "assets" / "images").resolve()
        if path.parent != folder or not path.name.startswith(f"{asset_id}-"):
            return None
        return path
