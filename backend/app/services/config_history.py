# app/services/config_history.py
"""Snapshots of the config maps and secrets each deployment shipped with."""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, UnsupportedOperationError
from app.models.cicd import CdPipeline
from app.models.config_maps import (
    KIND_CONFIGMAP,
    KIND_SECRET,
    ConfigMapEntry,
    ConfigMapHistory,
)
from app.services.runner_repository import DeploymentRunRepository
from app.services.secrets_service import SecretsService, secrets_service

logger = logging.getLogger(__name__)

HISTORY_COMPONENTS = (KIND_CONFIGMAP, KIND_SECRET)


def _check_component(component: str) -> str:
    if component not in HISTORY_COMPONENTS:
        raise UnsupportedOperationError(f"history of {component} not supported")
    return component


class DeployedConfigurationHistoryService:
    def __init__(self, db: Session, secrets: SecretsService = secrets_service):
        self.db = db
        self.repository = DeploymentRunRepository(db)
        self.secrets = secrets

    def resolve_config(self, pipeline: CdPipeline, kind: str) -> List[dict]:
        """App level entries overlaid with the environment's entries of the same name."""
        entries = (
            self.db.query(ConfigMapEntry)
            .filter(
                ConfigMapEntry.app_name == pipeline.app_name,
                ConfigMapEntry.kind == kind,
                or_(
                    ConfigMapEntry.environment_name.is_(None),
                    ConfigMapEntry.environment_name == pipeline.environment_name,
                ),
            )
            .order_by(ConfigMapEntry.name)
            .all()
        )
        resolved: Dict[str, dict] = {}
        # app level first so the environment override replaces it
        for entry in sorted(entries, key=lambda e: e.environment_name is not None):
            resolved[entry.name] = {
                "name": entry.name,
                "data": dict(entry.data or {}),
                "external": entry.external,
                "global": entry.environment_name is None,
            }
        return list(resolved.values())

    def check_history_exists(
        self, pipeline_id: int, deployed_on: datetime, kind: str
    ) -> Optional[ConfigMapHistory]:
        return (
            self.db.query(ConfigMapHistory)
            .filter(
                ConfigMapHistory.pipeline_id == pipeline_id,
                ConfigMapHistory.deployed_on == deployed_on,
                ConfigMapHistory.kind == kind,
            )
            .first()
        )

    def create_histories_for_deployment_trigger(
        self, pipeline: CdPipeline, deployed_on: datetime, deployed_by: int
    ) -> Dict[str, int]:
        """Snapshot config maps and secrets once per pipeline and trigger time."""
        history_ids = {}
        for kind in HISTORY_COMPONENTS:
            history = self.check_history_exists(pipeline.id, deployed_on, kind)
            if history:
                logger.info(
                    f"{kind} history of pipeline {pipeline.id} at {deployed_on} already exists"
                )
            else:
                history = ConfigMapHistory(
                    pipeline_id=pipeline.id,
                    kind=kind,
                    data=self.resolve_config(pipeline, kind),
                    deployed=True,
                    deployed_on=deployed_on,
                    deployed_by=deployed_by,
                )
                self.db.add(history)
                self.db.flush()
            history_ids[kind] = history.id
        self.db.commit()
        return history_ids

    def get_deployed_configuration_by_runner(self, pipeline_id: int, runner_id: int) -> List[dict]:
        runner = self.repository.find_runner_by_id(runner_id)
        if runner.pipeline_id != pipeline_id:
            raise NotFoundError(f"deployment run {runner_id} not found for pipeline {pipeline_id}")

        configurations = []
        for kind in HISTORY_COMPONENTS:
            history = self.check_history_exists(pipeline_id, runner.started_on, kind)
            if history:
                configurations.append(
                    {
                        "id": history.id,
                        "name": kind,
                        "child_component_names": [item["name"] for item in history.data],
                    }
                )
        return configurations

    def get_deployed_history_list(self, pipeline_id: int, component: str) -> List[dict]:
        kind = _check_component(component)
        histories = (
            self.db.query(ConfigMapHistory)
            .filter(
                ConfigMapHistory.pipeline_id == pipeline_id,
                ConfigMapHistory.kind == kind,
                ConfigMapHistory.deployed.is_(True),
            )
            .order_by(ConfigMapHistory.deployed_on.desc())
            .all()
        )
        return [h.to_dict() for h in histories]

    def get_history_detail(
        self,
        pipeline_id: int,
        history_id: int,
        component: str,
        user_has_admin_access: bool = False,
    ) -> dict:
        kind = _check_component(component)
        history = (
            self.db.query(ConfigMapHistory)
            .filter(
                ConfigMapHistory.id == history_id,
                ConfigMapHistory.pipeline_id == pipeline_id,
                ConfigMapHistory.kind == kind,
            )
            .first()
        )
        if not history:
            raise NotFoundError(f"{kind} history {history_id} not found")

        items = []
        for item in history.data:
            data = item.get("data", {})
            if kind == KIND_SECRET and not item.get("external"):
                if user_has_admin_access:
                    data = self.secrets.decrypt_data(data)
                else:
                    data = self.secrets.mask_data(data)
            items.append({**item, "data": data})

        detail = history.to_dict()
        detail["items"] = items
        return detail
