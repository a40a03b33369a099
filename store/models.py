"""
SQLAlchemy ORM models for the AQHI engine.
Tables: reconciled_readings, risk_index_results
"""

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Text

from store.database import Base


class ReconciledReadingRow(Base):
    __tablename__ = "reconciled_readings"

    location_id = Column(String(50), primary_key=True)
    time_bucket = Column(DateTime(timezone=True), primary_key=True)
    pm25 = Column(Float, nullable=True)
    pm10 = Column(Float, nullable=True)
    o3 = Column(Float, nullable=True)
    no2 = Column(Float, nullable=True)
    so2 = Column(Float, nullable=True)
    co = Column(Float, nullable=True)
    pm25_source = Column(String(30), nullable=True)
    pm10_source = Column(String(30), nullable=True)
    o3_source = Column(String(30), nullable=True)
    no2_source = Column(String(30), nullable=True)
    so2_source = Column(String(30), nullable=True)
    co_source = Column(String(30), nullable=True)
    sources_seen = Column(Text, nullable=False, default="[]")   # JSON list
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_reconciled_readings_time_bucket", "time_bucket"),
    )


class RiskIndexResultRow(Base):
    __tablename__ = "risk_index_results"

    location_id = Column(String(50), primary_key=True)
    window_end = Column(DateTime(timezone=True), primary_key=True)
    value = Column(Float, nullable=True)
    display_value = Column(Float, nullable=True)
    category = Column(String(30), nullable=True)
    data_quality = Column(String(20), nullable=False)
    sources_used = Column(Text, nullable=False, default="{}")   # JSON object
    sample_count = Column(Integer, nullable=False, default=0)
    advice = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_risk_index_results_updated_at", "updated_at"),
    )
