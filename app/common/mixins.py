"""
Common mixins for cooperative-scoped models
"""
from sqlalchemy import Column, DateTime, ForeignKey, Uuid
from sqlalchemy.sql import func


class CooperativeMixin:
    """Mixin for models owned by a single cooperative"""

    cooperative_id = Column(Uuid, ForeignKey("cooperatives.id"), nullable=False, index=True)


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
