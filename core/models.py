"""
OpsMemory Database Models
Knowledge facts, investigations and troubleshooting patterns
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Float, Boolean,
    DateTime, ForeignKey, CheckConstraint, Index
)
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a stored timestamp (SQLite drops tzinfo) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class FactSource(str, PyEnum):
    discovered = "discovered"
    user_told = "user_told"
    auto_refresh = "auto_refresh"
    manual = "manual"


FACT_SOURCES = {source.value for source in FactSource}


# =============================================================================
# Knowledge (confidence-weighted facts)
# =============================================================================

class Fact(Base):
    __tablename__ = "knowledge"

    id = Column(Integer, primary_key=True)
    topic = Column(String(200), nullable=False)  # "docker:nginx", "alias:mac"
    fact = Column(Text, nullable=False)
    context = Column(Text)
    confidence = Column(Float, default=0.8, nullable=False)
    source = Column(String(20), default=FactSource.discovered.value, nullable=False)
    is_valid = Column(Boolean, default=True, nullable=False)
    last_verified = Column(DateTime(timezone=True))
    contradicts_id = Column(Integer, ForeignKey("knowledge.id"))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_used = Column(DateTime(timezone=True))

    contradicts = relationship("Fact", remote_side=[id])

    __table_args__ = (
        CheckConstraint('confidence >= 0 AND confidence <= 1', name='check_knowledge_confidence'),
        Index('ix_knowledge_topic', 'topic'),
        Index('ix_knowledge_topic_is_valid', 'topic', 'is_valid'),
    )


# =============================================================================
# Investigations (diagnostic sessions)
# =============================================================================

class Investigation(Base):
    __tablename__ = "investigations"

    id = Column(Integer, primary_key=True)
    thread_id = Column(BigInteger, nullable=False)  # chat thread / channel id
    trigger = Column(Text, nullable=False)
    started_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    resolved = Column(Boolean, default=False, nullable=False)
    resolution = Column(Text)

    steps = relationship(
        "InvestigationStep",
        back_populates="investigation",
        cascade="all, delete-orphan",
        order_by="InvestigationStep.timestamp, InvestigationStep.id",
    )

    __table_args__ = (
        Index('ix_investigations_thread_id', 'thread_id'),
        Index('ix_investigations_resolved', 'resolved'),
        Index('ix_investigations_thread_resolved', 'thread_id', 'resolved'),
    )


class InvestigationStep(Base):
    __tablename__ = "investigation_steps"

    id = Column(Integer, primary_key=True)
    investigation_id = Column(
        Integer,
        ForeignKey("investigations.id", ondelete="CASCADE"),
        nullable=False,
    )
    action = Column(Text, nullable=False)
    plugin = Column(String(100))
    result_summary = Column(Text)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    investigation = relationship("Investigation", back_populates="steps")

    __table_args__ = (
        Index('ix_investigation_steps_investigation_id', 'investigation_id'),
    )


# =============================================================================
# Patterns (symptom -> cause -> resolution)
# =============================================================================

class Pattern(Base):
    __tablename__ = "patterns"

    id = Column(Integer, primary_key=True)
    symptom = Column(Text, nullable=False)
    common_cause = Column(Text)
    resolution = Column(Text)
    occurrence_count = Column(Integer, default=1, nullable=False)
    last_seen = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('ix_patterns_symptom', 'symptom'),
        Index('ix_patterns_occurrence_count', 'occurrence_count'),
    )
