"""ORM model for persisted false-positive marks."""

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint

from securitybot.models.base import Base


class FalsePositiveMarkRecord(Base):
    """
    One false-positive mark, scoped to a repository and change set.

    Rows are never deleted. A decision updates the row in place under optimistic locking
    (`version`); a new mark for the same finding key is a new row with the next `sequence`.
    """

    __tablename__ = "false_positive_marks"
    __table_args__ = (
        UniqueConstraint(
            "repository",
            "change_set_id",
            "check_id",
            "file_path",
            "line",
            "content_hash",
            "sequence",
            name="uq_false_positive_marks_key_sequence",
        ),
    )

    id = Column(String(64), primary_key=True)
    repository = Column(String(512), nullable=False, default="", index=True)
    change_set_id = Column(String(255), nullable=False, index=True)
    check_id = Column(String(255), nullable=False)
    file_path = Column(String(2048), nullable=False)
    line = Column(Integer, nullable=False)
    content_hash = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    requester = Column(String(255), nullable=False)
    reason = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    approval_state = Column(String(32), nullable=False)
    decided_by = Column(String(255), nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    sequence = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
