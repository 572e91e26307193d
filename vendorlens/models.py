import uuid
from datetime import datetime

from sqlalchemy import Float, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base

GLOBAL_SCOPE = "global"


def owner_scope(user_id: int | None) -> str:
    """Scope key used by the uniqueness constraint; NULL owners share one scope."""
    return GLOBAL_SCOPE if user_id is None else f"user:{user_id}"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(200), unique=True)
    name: Mapped[str] = mapped_column(String(200))
    password_hash: Mapped[str] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)

    vendor_mappings: Mapped[list["VendorMapping"]] = relationship(
        back_populates="user"
    )


class VendorMapping(Base):
    __tablename__ = "vendor_mappings"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    original_text: Mapped[str] = mapped_column(String(500), index=True)
    mapped_name: Mapped[str] = mapped_column(String(200))
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    source: Mapped[str] = mapped_column(String(10))
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE")
    )
    scope: Mapped[str] = mapped_column(String(40), default=GLOBAL_SCOPE)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("original_text", "scope", name="uq_vendor_mapping_scope"),
    )

    user: Mapped["User | None"] = relationship(back_populates="vendor_mappings")

    @property
    def is_global(self) -> bool:
        return self.user_id is None
