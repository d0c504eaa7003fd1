from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.db import Base


class Node(Base):
    """One scalar leaf of the data tree, addressed by its full path."""

    __tablename__ = "nodes"

    path: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # JSON scalar
