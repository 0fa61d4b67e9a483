from sqlalchemy import Column, String, DateTime, Float, Index
from sqlalchemy.sql import func
from regateo.db.base_class import Base
import uuid

class Listing(Base):
    """
    Publicación del catálogo. La escribe el servicio de publicaciones;
    este núcleo solo la lee para copiar el título y el precio a una oferta nueva.
    """
    __tablename__ = "listings"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    currency = Column(String, default="USD")
    status = Column(String, default="active")  # active, sold, unavailable
    seller_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index('idx_listing_seller_status', 'seller_id', 'status'),
    )
