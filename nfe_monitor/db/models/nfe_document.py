from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text, func
from ..database import Base


class NfeDocument(Base):

    __tablename__ = "nfe_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    access_key = Column(String(44), nullable=False, unique=True)
    number = Column(String(20), nullable=False, default="")
    series = Column(String(10), nullable=False, default="")
    issue_date = Column(DateTime(timezone=True), nullable=True)
    total_value = Column(Numeric(15, 2), nullable=False, default=0)
    issuer_id = Column(String(14), nullable=False, default="")
    issuer_name = Column(String(255), nullable=False, default="")
    recipient_id = Column(String(14), nullable=False, default="")
    recipient_name = Column(String(255), nullable=False, default="")
    status = Column(String(50), nullable=False, index=True)
    # only set for rejected documents
    rejection_reason = Column(Text, nullable=True)
    rejection_code = Column(String(10), nullable=True)
    rejection_date = Column(DateTime(timezone=True), nullable=True)
    raw_content = Column(Text, nullable=True)
    queried_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
