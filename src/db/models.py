"""SQLAlchemy ORM models for the threat defense store."""

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    return str(uuid.uuid4())


class FraudLog(Base):
    """Fraud signal events written by request-time middleware. Read-only here."""

    __tablename__ = "fraud_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    gan: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    device_fingerprint: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    merchant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    threat_type: Mapped[str] = mapped_column(String, default="unknown")
    reason: Mapped[str] = mapped_column(String, default="")
    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True, server_default=func.now()
    )


class FraudCluster(Base):
    __tablename__ = "fraud_clusters"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    label: Mapped[str] = mapped_column(String)
    score: Mapped[str] = mapped_column(String)
    severity: Mapped[int] = mapped_column(Integer, index=True)
    threat_count: Mapped[int] = mapped_column(Integer)
    pattern_type: Mapped[str] = mapped_column(String, index=True)
    cluster_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), index=True, server_default=func.now()
    )


class ClusterPattern(Base):
    __tablename__ = "cluster_patterns"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    cluster_id: Mapped[str] = mapped_column(
        String, ForeignKey("fraud_clusters.id"), index=True
    )
    fraud_log_id: Mapped[str] = mapped_column(String, index=True)
    pattern_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    similarity: Mapped[float] = mapped_column(Float, default=95.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ActionRuleDB(Base):
    __tablename__ = "action_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True, index=True)
    condition: Mapped[str] = mapped_column(String)
    action_type: Mapped[str] = mapped_column(String)
    severity: Mapped[int] = mapped_column(Integer, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    trigger_count: Mapped[int] = mapped_column(Integer, default=0)
    last_triggered: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rule_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class DefenseActionDB(Base):
    __tablename__ = "defense_actions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    action_type: Mapped[str] = mapped_column(String, index=True)
    triggered_by: Mapped[str] = mapped_column(String)
    target_value: Mapped[str] = mapped_column(String, index=True)
    severity: Mapped[int] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    action_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class DefenseHistoryDB(Base):
    __tablename__ = "defense_history"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    action_id: Mapped[str | None] = mapped_column(String, nullable=True)
    cluster_id: Mapped[str] = mapped_column(String, index=True)
    rule_id: Mapped[str] = mapped_column(String, index=True)
    result: Mapped[str] = mapped_column(String)
    impact_metrics: Mapped[dict] = mapped_column(JSONB, default=dict)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
