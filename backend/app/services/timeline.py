# app/services/timeline.py
"""Append-only status timeline of deployment runs and helm app histories."""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import AdvisoryError
from app.models.cicd import PipelineStatusTimeline
from app.models.status import (
    TIMELINE_DESCRIPTION_DEPLOYMENT_SUPERSEDED,
    TimelineStatus,
)

logger = logging.getLogger(__name__)


class PipelineStatusTimelineService:
    """Records status milestones; a (run or history, status) pair is written once."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def new_runner_timeline(
        runner_id: int,
        status: TimelineStatus,
        detail: str,
        user_id: Optional[int] = None,
        status_time: Optional[datetime] = None,
    ) -> PipelineStatusTimeline:
        return PipelineStatusTimeline(
            cd_workflow_runner_id=runner_id,
            status=TimelineStatus(status).value,
            status_detail=detail,
            status_time=status_time or datetime.utcnow(),
            created_by=user_id,
        )

    @staticmethod
    def new_helm_app_timeline(
        history_id: int,
        status: TimelineStatus,
        detail: str,
        user_id: Optional[int] = None,
    ) -> PipelineStatusTimeline:
        return PipelineStatusTimeline(
            installed_app_version_history_id=history_id,
            status=TimelineStatus(status).value,
            status_detail=detail,
            status_time=datetime.utcnow(),
            created_by=user_id,
        )

    def save_timeline(self, timeline: PipelineStatusTimeline, tx_commit: bool = True):
        """Append one entry. With tx_commit=False it joins the caller's transaction."""
        self.db.add(timeline)
        if tx_commit:
            self.db.commit()
        else:
            self.db.flush()
        return timeline

    def record_advisory(self, timeline: PipelineStatusTimeline) -> bool:
        """Best-effort append; failures are logged and never raised."""
        try:
            self._save_advisory(timeline)
            return True
        except AdvisoryError as e:
            logger.warning(f"Ignoring timeline write failure: {e}")
            return False

    def _save_advisory(self, timeline: PipelineStatusTimeline):
        try:
            self.save_timeline(timeline)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise AdvisoryError(
                f"could not save {timeline.status} timeline", cause=e
            ) from e

    def timeline_exists(
        self,
        status: str,
        runner_id: Optional[int] = None,
        history_id: Optional[int] = None,
    ) -> bool:
        query = self.db.query(PipelineStatusTimeline.id).filter(
            PipelineStatusTimeline.status == status
        )
        if runner_id is not None:
            query = query.filter(PipelineStatusTimeline.cd_workflow_runner_id == runner_id)
        if history_id is not None:
            query = query.filter(
                PipelineStatusTimeline.installed_app_version_history_id == history_id
            )
        return query.first() is not None

    def save_timelines_if_not_present(
        self, timelines: List[PipelineStatusTimeline]
    ) -> List[PipelineStatusTimeline]:
        """Write the entries whose (run or history, status) is not recorded yet.

        Runs in the caller's transaction: the entries are flushed, not committed.
        """
        written = []
        seen = set()
        for timeline in timelines:
            key = (
                timeline.cd_workflow_runner_id,
                timeline.installed_app_version_history_id,
                timeline.status,
            )
            if key in seen or self.timeline_exists(
                timeline.status,
                runner_id=timeline.cd_workflow_runner_id,
                history_id=timeline.installed_app_version_history_id,
            ):
                logger.info(
                    f"Timeline {timeline.status} already recorded for runner "
                    f"{timeline.cd_workflow_runner_id} / history "
                    f"{timeline.installed_app_version_history_id}, skipping"
                )
                continue
            seen.add(key)
            self.db.add(timeline)
            written.append(timeline)
        self.db.flush()
        return written

    def mark_pipeline_status_timeline_superseded(
        self, runner_id: int, user_id: Optional[int] = None, tx_commit: bool = True
    ) -> PipelineStatusTimeline:
        timeline = self.new_runner_timeline(
            runner_id,
            TimelineStatus.DEPLOYMENT_SUPERSEDED,
            TIMELINE_DESCRIPTION_DEPLOYMENT_SUPERSEDED,
            user_id,
        )
        return self.save_timeline(timeline, tx_commit=tx_commit)

    def mark_pipeline_status_timeline_failed(
        self, runner_id: int, detail: str, user_id: Optional[int] = None
    ) -> PipelineStatusTimeline:
        timeline = self.new_runner_timeline(
            runner_id, TimelineStatus.DEPLOYMENT_FAILED, detail, user_id
        )
        return self.save_timeline(timeline)

    def fetch_timelines(
        self, runner_id: Optional[int] = None, history_id: Optional[int] = None
    ) -> List[PipelineStatusTimeline]:
        query = self.db.query(PipelineStatusTimeline)
        if runner_id is not None:
            query = query.filter(PipelineStatusTimeline.cd_workflow_runner_id == runner_id)
        if history_id is not None:
            query = query.filter(
                PipelineStatusTimeline.installed_app_version_history_id == history_id
            )
        return query.order_by(
            PipelineStatusTimeline.status_time, PipelineStatusTimeline.id
        ).all()
