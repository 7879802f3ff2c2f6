from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import relationship
from healthcast.db.base import Base

class Locality(Base):
    __tablename__ = "localities"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(128), unique=True, nullable=False)
    # Unknown for catch-all zones; severity falls back to absolute counts
    population = Column(Integer, nullable=True)

    case_counts = relationship("CaseCount", back_populates="locality")
