from .note import Note, Visibility
from .tag import Tag
from .note_tag import note_tags

__all__ = ["Note", "Visibility", "Tag", "note_tags"]
