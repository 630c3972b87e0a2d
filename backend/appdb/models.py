"""ORM models for the installed applications database."""

from sqlalchemy import Column, Float, ForeignKey, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Application(Base):
    """One installed application. The manifest is stored as JSON text."""

    __tablename__ = "applications"

    id = Column(String, primary_key=True)
    manifest = Column(Text, nullable=False)
    path = Column(Text, nullable=False)
    install_time = Column(Float, nullable=False)


class RegisteredEvents(Base):
    """Event names an application listens to, joined with ';'."""

    __tablename__ = "events"

    id = Column(
        String,
        ForeignKey("applications.id", ondelete="CASCADE"),
        primary_key=True,
    )
    events = Column(Text, nullable=False)


class MetaEntry(Base):
    """Key/value metadata; holds the schema version."""

    __tablename__ = "meta"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
