from sqlalchemy import Column, Integer, String, Float, BigInteger, JSON
from database import Base
import uuid

def generate_uuid():
    return str(uuid.uuid4())

class ReportRecord(Base):
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    category = Column(String(32), nullable=False) # e.g. "vehicular-control"
    description = Column(String(200), nullable=True)
    created_at = Column(BigInteger, nullable=False, index=True) # Unix millis, UTC
    author_token = Column(String(128), nullable=False)
    confirmations = Column(Integer, nullable=False, default=0)
    voters = Column(JSON, nullable=False, default=list) # list of tokens
    comments = Column(JSON, nullable=False, default=list) # list of {text, author, ts}
    version = Column(Integer, nullable=False, default=0)
