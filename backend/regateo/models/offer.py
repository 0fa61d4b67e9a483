from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Float, Index
from sqlalchemy.orm import relationship
from regateo.db.base_class import Base
from regateo.core.utils import utcnow
import uuid

class Offer(Base):
    __tablename__ = "offers"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    # Copia del catálogo al crear la oferta; no se vuelve a sincronizar
    tool_id = Column(String, nullable=False, index=True)
    tool_title = Column(String, nullable=False)
    currency = Column(String, default="USD")
    buyer_id = Column(String, nullable=False)
    seller_id = Column(String, nullable=False)
    original_price = Column(Float, nullable=False)
    current_price = Column(Float, nullable=False)
    status = Column(String, nullable=False, default="pending")
    is_active = Column(Boolean, nullable=False, default=True)
    has_unread_messages_buyer = Column(Boolean, nullable=False, default=False)
    has_unread_messages_seller = Column(Boolean, nullable=False, default=True)
    # Parte que hizo el último movimiento de precio (oferta inicial o contraoferta)
    last_actor_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), index=True)  # Solo informativo salvo que el barrido esté activo
    version = Column(Integer, nullable=False)  # Para control de concurrencia optimista

    messages = relationship(
        "OfferMessage",
        back_populates="offer",
        order_by="OfferMessage.sequence",
        lazy="raise",
    )

    __mapper_args__ = {"version_id_col": version}

    # Índices adicionales
    __table_args__ = (
        Index('idx_offer_buyer_updated', 'buyer_id', 'updated_at'),
        Index('idx_offer_seller_updated', 'seller_id', 'updated_at'),
        Index('idx_offer_active_expires', 'is_active', 'expires_at'),
    )

class OfferMessage(Base):
    """Entrada del hilo de una oferta. Solo se insertan, nunca se modifican (salvo is_read)."""
    __tablename__ = "offer_messages"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    offer_id = Column(String, ForeignKey("offers.id"), nullable=False)
    sender_id = Column(String, nullable=False)
    recipient_id = Column(String, nullable=False)
    message_type = Column(String, nullable=False)  # offer, counter, accepted, declined, message
    price = Column(Float, nullable=True)
    message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    # Versión de la oferta producida por la escritura que añadió la entrada
    sequence = Column(Integer, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)

    offer = relationship("Offer", back_populates="messages")

    __table_args__ = (
        Index('uq_offer_message_sequence', 'offer_id', 'sequence', unique=True),
        Index('idx_offer_message_recipient_read', 'offer_id', 'recipient_id', 'is_read'),
    )
