from sqlalchemy import Boolean, Column, DateTime, Integer, Text, func
from ..database import Base


class SefazStatus(Base):

    __tablename__ = "sefaz_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    online = Column(Boolean, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)  # always UTC
    # raw probe answer or error message
    detail = Column(Text, nullable=True)
