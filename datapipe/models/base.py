"""Mixins shared by the pipeline models."""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import Mapped, mapped_column


class ModelMixin:
    def __repr__(self) -> str:
        pk = getattr(self, "id", None)
        status = getattr(self, "status", None)
        if status is not None:
            return f"<{self.__class__.__name__}(id={pk}, status={status.value})>"
        return f"<{self.__class__.__name__}(id={pk})>"


class TimestampMixin:
    """created_at / updated_at maintained by the database."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class SoftDeleteMixin:
    """Rows are hidden by stamping deleted_at, never removed."""

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
