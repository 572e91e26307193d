from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .confidence import HIGH_CONFIDENCE, clamp
from .errors import Forbidden, NotFound, PersistenceError
from .models import VendorMapping, owner_scope


@dataclass
class MappingCreate:
    original_text: str
    mapped_name: str
    confidence: float
    source: str
    user_id: int | None = None


@dataclass
class MappingPatch:
    mapped_name: str | None = None
    confidence: float | None = None
    source: str | None = None

    def values(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class MappingStats:
    total_mappings: int = 0
    user_mappings: int = 0
    global_mappings: int = 0
    high_confidence_mappings: int = 0
    cache_effectiveness: float = 0.0
    by_source: dict[str, int] = field(default_factory=dict)


class VendorMappingQueries:
    """Typed access to the ``vendor_mappings`` table.

    Owns query shape and ownership checks only. Lookup keys are expected to be
    normalized already.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_id(self, mapping_id: str) -> VendorMapping | None:
        return await self.db.get(VendorMapping, mapping_id)

    async def find_mapping(
        self, normalized_text: str, user_id: int | None
    ) -> VendorMapping | None:
        scopes = [owner_scope(None)]
        if user_id is not None:
            scopes.append(owner_scope(user_id))
        rows = (
            (
                await self.db.execute(
                    select(VendorMapping).where(
                        VendorMapping.original_text == normalized_text,
                        VendorMapping.scope.in_(scopes),
                    )
                )
            )
            .scalars()
            .all()
        )
        # A user's own mapping overrides the global one.
        own = next((m for m in rows if m.user_id is not None), None)
        if own is not None:
            return own
        return next(iter(rows), None)

    async def find_global(self, normalized_text: str) -> VendorMapping | None:
        return await self.db.scalar(
            select(VendorMapping).where(
                VendorMapping.original_text == normalized_text,
                VendorMapping.scope == owner_scope(None),
            )
        )

    async def find_owned(
        self, normalized_text: str, user_id: int
    ) -> VendorMapping | None:
        return await self.db.scalar(
            select(VendorMapping).where(
                VendorMapping.original_text == normalized_text,
                VendorMapping.scope == owner_scope(user_id),
            )
        )

    async def list_user_mappings(self, normalized_text: str) -> list[VendorMapping]:
        rows = (
            (
                await self.db.execute(
                    select(VendorMapping)
                    .where(
                        VendorMapping.original_text == normalized_text,
                        VendorMapping.user_id.is_not(None),
                        VendorMapping.source == "user",
                    )
                    .order_by(VendorMapping.created_at)
                )
            )
            .scalars()
            .all()
        )
        return list(rows)

    async def create_mapping(self, data: MappingCreate) -> VendorMapping:
        mapping = VendorMapping(
            original_text=data.original_text,
            mapped_name=data.mapped_name,
            confidence=clamp(data.confidence),
            source=data.source,
            user_id=data.user_id,
            scope=owner_scope(data.user_id),
        )
        self.db.add(mapping)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise PersistenceError(
                "insert",
                "Vendor mapping already exists for this key and owner",
                code="INSERT_ERROR",
                details={"constraint": "uq_vendor_mapping_scope"},
            ) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                "insert", "Failed to create vendor mapping", code="INSERT_ERROR"
            ) from e
        await self.db.refresh(mapping)
        return mapping

    async def check_owner(self, mapping_id: str, user_id: int) -> VendorMapping:
        mapping = await self.get_by_id(mapping_id)
        if mapping is None:
            raise NotFound(mapping_id)
        # Global mappings have no owner and are never user-mutable.
        if mapping.user_id is None or mapping.user_id != user_id:
            raise Forbidden()
        return mapping

    async def update_mapping(
        self, mapping_id: str, patch: MappingPatch, user_id: int
    ) -> VendorMapping:
        mapping = await self.check_owner(mapping_id, user_id)
        values = patch.values()
        if "confidence" in values:
            values["confidence"] = clamp(values["confidence"])
        for key, value in values.items():
            setattr(mapping, key, value)
        mapping.updated_at = datetime.utcnow()
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                "update", "Failed to update vendor mapping", code="UPDATE_ERROR"
            ) from e
        await self.db.refresh(mapping)
        return mapping

    async def replace_global(
        self, mapping: VendorMapping, mapped_name: str, confidence: float, source: str
    ) -> VendorMapping:
        mapping.mapped_name = mapped_name
        mapping.confidence = clamp(confidence)
        mapping.source = source
        mapping.updated_at = datetime.utcnow()
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                "update", "Failed to update vendor mapping", code="UPDATE_ERROR"
            ) from e
        await self.db.refresh(mapping)
        return mapping

    async def delete_mapping(self, mapping_id: str, user_id: int) -> None:
        mapping = await self.check_owner(mapping_id, user_id)
        try:
            await self.db.delete(mapping)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                "delete", "Failed to delete vendor mapping", code="DELETE_ERROR"
            ) from e

    def _visible_to(self, user_id: int):
        return or_(VendorMapping.user_id == user_id, VendorMapping.user_id.is_(None))

    async def paginate(
        self,
        user_id: int,
        search: str | None,
        source: str | None,
        page: int,
        limit: int,
    ) -> tuple[list[VendorMapping], int]:
        conditions = [self._visible_to(user_id)]
        if search:
            conditions.append(
                or_(
                    VendorMapping.original_text.ilike(f"%{search}%"),
                    VendorMapping.mapped_name.ilike(f"%{search}%"),
                )
            )
        if source:
            conditions.append(VendorMapping.source == source)

        total = (
            await self.db.scalar(
                select(func.count(VendorMapping.id)).where(*conditions)
            )
            or 0
        )
        rows = (
            (
                await self.db.execute(
                    select(VendorMapping)
                    .where(*conditions)
                    .order_by(
                        VendorMapping.confidence.desc(),
                        VendorMapping.created_at.desc(),
                        VendorMapping.id,
                    )
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            )
            .scalars()
            .all()
        )
        return list(rows), total

    async def stats(self, user_id: int | None = None) -> MappingStats:
        row = (
            await self.db.execute(
                select(
                    func.count(VendorMapping.id).label("total"),
                    func.coalesce(
                        func.sum(case((VendorMapping.user_id.is_(None), 1), else_=0)),
                        0,
                    ).label("global_count"),
                    func.coalesce(
                        func.sum(
                            case(
                                (VendorMapping.confidence >= HIGH_CONFIDENCE, 1),
                                else_=0,
                            )
                        ),
                        0,
                    ).label("high_count"),
                )
            )
        ).one()
        user_count = 0
        if user_id is not None:
            user_count = (
                await self.db.scalar(
                    select(func.count(VendorMapping.id)).where(
                        VendorMapping.user_id == user_id
                    )
                )
                or 0
            )
        source_rows = (
            await self.db.execute(
                select(VendorMapping.source, func.count(VendorMapping.id)).group_by(
                    VendorMapping.source
                )
            )
        ).all()

        total = row.total or 0
        effectiveness = (row.high_count + user_count) / total if total else 0.0
        return MappingStats(
            total_mappings=total,
            user_mappings=user_count,
            global_mappings=row.global_count,
            high_confidence_mappings=row.high_count,
            cache_effectiveness=effectiveness,
            by_source={src: count for src, count in source_rows},
        )

    async def cleanup(
        self, min_confidence: float = 0.3, older_than_days: int = 30
    ) -> int:
        """Delete stale low-confidence global mappings. User overrides are kept."""
        cutoff = datetime.utcnow() - timedelta(days=older_than_days)
        result = await self.db.execute(
            delete(VendorMapping).where(
                VendorMapping.user_id.is_(None),
                VendorMapping.confidence < min_confidence,
                VendorMapping.created_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
