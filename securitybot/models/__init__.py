"""SQLAlchemy ORM models."""

from securitybot.models.base import Base
from securitybot.models.false_positive import FalsePositiveMarkRecord

__all__ = ["Base", "FalsePositiveMarkRecord"]
