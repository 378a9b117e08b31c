# app/services/metrics.py
"""Deployment metrics sink. Recording a metric never fails the caller."""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.cicd import CdPipeline, DeploymentMetric, DeploymentRun

logger = logging.getLogger(__name__)


class DeploymentMetricsSink:
    def __init__(self, db: Session, enabled: bool = False):
        self.db = db
        self.enabled = enabled

    def emit_deployment_metric(
        self, runner: DeploymentRun, pipeline: Optional[CdPipeline] = None
    ) -> Optional[DeploymentMetric]:
        if not self.enabled:
            return None
        pipeline = pipeline or runner.pipeline
        duration = None
        if runner.started_on and runner.finished_on:
            duration = (runner.finished_on - runner.started_on).total_seconds()
        metric = DeploymentMetric(
            runner_id=runner.id,
            pipeline_id=runner.pipeline_id,
            app_name=pipeline.app_name if pipeline else None,
            environment_name=pipeline.environment_name if pipeline else None,
            deployment_app_type=pipeline.deployment_app_type if pipeline else None,
            status=runner.status,
            duration_seconds=duration,
        )
        try:
            self.db.add(metric)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record deployment metric for run {runner.id}: {e}")
            return None
        logger.info(
            f"Deployment metric: run={runner.id} status={runner.status} duration={duration}"
        )
        return metric
