"""ArtStyle entity - prompt suffix appended to user prompts."""

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

DEFAULT_STYLE_ID = 1


class ArtStyle(SQLModel, table=True):
    """ArtStyle stores a named style and the prompt fragment it contributes.

    Style 1 is "no style" with an empty prompt.
    """

    __tablename__ = "art_styles"  # type: ignore[assignment]

    id: int = Field(primary_key=True)
    name: str = Field(max_length=100)
    prompt: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
