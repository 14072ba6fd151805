from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey
from sqlalchemy.sql import func
from fanout.database import Base

class Wallet(Base):
    __tablename__ = "wallets"
    id = Column(Integer, primary_key=True)
    public_key = Column(String, unique=True, index=True, nullable=False)
    private_key = Column(String, nullable=False)
    role = Column(String, nullable=False)  # distributor|intermediate|terminal
    parent_key = Column(String, ForeignKey("wallets.public_key"), index=True, nullable=True)
    sol_balance = Column(Float, nullable=False, default=0.0)
    token_balance = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
