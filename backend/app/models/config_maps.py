"""
Database models for config maps and secrets
Entries are defined per app, optionally overridden per environment,
and a resolved snapshot is stored every time a pipeline deploys
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)

from app.db.session import Base

KIND_CONFIGMAP = "CONFIGMAP"
KIND_SECRET = "SECRET"


class ConfigMapEntry(Base):
    """A config map or secret; environment_name is NULL for app level entries"""

    __tablename__ = "config_map_entries"

    id = Column(Integer, primary_key=True)
    app_name = Column(String(255), nullable=False, index=True)
    environment_name = Column(String(255), nullable=True)
    kind = Column(String(20), nullable=False)  # CONFIGMAP, SECRET
    name = Column(String(255), nullable=False)
    data = Column(JSON, nullable=False, default=dict)  # secret values are encrypted
    external = Column(Boolean, nullable=False, default=False)
    updated_on = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "app_name", "environment_name", "kind", "name", name="_config_map_entry_uc"
        ),
    )

    def to_dict(self):
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "app_name": self.app_name,
            "environment_name": self.environment_name,
            "kind": self.kind,
            "name": self.name,
            "data": self.data,
            "external": self.external,
        }


class ConfigMapHistory(Base):
    """Snapshot of the config maps or secrets a pipeline deployed"""

    __tablename__ = "config_map_histories"

    id = Column(Integer, primary_key=True)
    pipeline_id = Column(Integer, nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    data = Column(JSON, nullable=False, default=list)  # resolved entries
    deployed = Column(Boolean, nullable=False, default=True)
    deployed_on = Column(DateTime, nullable=False)
    deployed_by = Column(Integer)

    def to_dict(self):
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "kind": self.kind,
            "deployed": self.deployed,
            "deployed_on": self.deployed_on.isoformat() if self.deployed_on else None,
            "deployed_by": self.deployed_by,
        }
