from sqlalchemy import Column, Date, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from healthcast.db.base import Base

class CaseCount(Base):
    """One historical count row: disease cases reported or service appointments completed."""

    __tablename__ = "case_counts"

    id          = Column(Integer, primary_key=True)
    kind        = Column(String(16), nullable=False)     # "disease" | "service"
    name        = Column(String(64), nullable=False)     # e.g. dengue, food_handler
    locality_id = Column(Integer, ForeignKey("localities.id", ondelete="SET NULL"), nullable=True)
    record_date = Column(Date, nullable=False)
    count       = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_case_counts_kind_name_date", "kind", "name", "record_date"),
    )

    locality = relationship("Locality", back_populates="case_counts")
