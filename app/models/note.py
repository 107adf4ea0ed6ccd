from sqlalchemy import Column, Integer, String, Text, BigInteger, Boolean, JSON
from sqlalchemy.orm import relationship
from app.core.database import Base


class Visibility:
    PRIVATE = "private"
    USERS = "users"
    PUBLIC = "public"

    ALL = (PRIVATE, USERS, PUBLIC)


class Note(Base):
    __tablename__ = "notes"

    id = Column(Integer, primary_key=True, index=True)
    content = Column(Text, nullable=False, default="")
    # Attachment records, see app.schemas.note.parse_attachments
    files = Column(JSON, nullable=False, default=list)
    # Inline media derived from content on every edit
    pics = Column(JSON, nullable=False, default=list)
    videos = Column(JSON, nullable=False, default=list)
    owner_id = Column(Integer, nullable=True, index=True)
    visibility = Column(String(16), nullable=False, default=Visibility.PRIVATE)
    is_pinned = Column(Boolean, nullable=False, default=False)
    is_favorited = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    # Epoch milliseconds
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False, index=True)

    tags = relationship("Tag", secondary="note_tags", back_populates="notes", passive_deletes=True)
