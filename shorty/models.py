from sqlalchemy import Column, DateTime, Integer, String, Text

from shorty.database import Base


class Link(Base):
    __tablename__ = "links"

    code = Column(String(8), primary_key=True)
    target = Column(Text, nullable=False)
    clicks = Column(Integer, nullable=False, default=0)
    last_clicked = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
