"""
Database models for the runner (sync version).

Mirrors api/src/models/pipeline.py; both components share the same tables.
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(String(36), primary_key=True)
    pipeline_name = Column(String(255), nullable=False)
    status = Column(String(50), default="pending")
    triggered_by = Column(String(255))
    repository = Column(String(255))
    branch = Column(String(255))
    commit_sha = Column(String(40))
    config = Column(JSON)
    parameters = Column(JSON)
    manifest = Column(JSON)
    error = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class PipelineStage(Base):
    __tablename__ = "pipeline_stages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    stage_order = Column(Integer, nullable=False)
    status = Column(String(50), default="running")
    error_kind = Column(String(50))
    error = Column(Text)
    logs = Column(Text)
    report = Column(JSON)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
