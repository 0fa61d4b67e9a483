from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, JSON
from sqlalchemy.orm import relationship
from regateo.db.base_class import Base
from regateo.core.utils import utcnow
import uuid

class Conversation(Base):
    __tablename__ = "conversations"

    # Clave determinista: ids de los participantes ordenados (ver conversation_key)
    id = Column(String, primary_key=True, index=True)
    # Participantes guardados en orden: participant_a < participant_b
    participant_a = Column(String, nullable=False)
    participant_b = Column(String, nullable=False)
    last_message_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_message_text = Column(String, nullable=False, default="")
    # Las columnas JSON se reemplazan completas en cada escritura
    unread_by_users = Column(JSON, nullable=False, default=list)
    user_status = Column(JSON, nullable=False, default=dict)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    messages = relationship(
        "ConversationMessage",
        back_populates="conversation",
        order_by="ConversationMessage.sequence",
        lazy="raise",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_conversation_a_last', 'participant_a', 'last_message_at'),
        Index('idx_conversation_b_last', 'participant_b', 'last_message_at'),
        Index('uq_conversation_pair', 'participant_a', 'participant_b', unique=True),
    )

    @property
    def participants(self):
        return [self.participant_a, self.participant_b]

class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String, nullable=False)
    text = Column(String, nullable=False)
    type = Column(String, nullable=False, default="text")  # text, system
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    sequence = Column(Integer, nullable=False)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index('uq_conversation_message_sequence', 'conversation_id', 'sequence', unique=True),
    )
