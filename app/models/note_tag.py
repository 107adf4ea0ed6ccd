from sqlalchemy import Column, Integer, ForeignKey, Table
from app.core.database import Base

# Association table for many-to-many relationship between notes and tags,
# rebuilt wholesale from note content on every edit
note_tags = Table(
    'note_tags',
    Base.metadata,
    Column('note_id', Integer, ForeignKey('notes.id', ondelete='CASCADE'), primary_key=True),
    Column('tag_id', Integer, ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True)
)
