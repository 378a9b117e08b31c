# tests/test_cd_workflow.py
"""Tests for supersession, failure marking and trigger handling of deployment runs."""

from datetime import datetime

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import (
    FOUND_VULNERABILITY,
    ControlPlaneError,
    DeploymentSupersededError,
    ExternalServiceError,
    NotFoundError,
    UnsupportedOperationError,
)
from app.models.cicd import DeploymentMetric, DeploymentRun, PipelineStatusTimeline
from app.models.config_maps import ConfigMapHistory
from app.models.status import (
    TIMELINE_DESCRIPTION_DEPLOYMENT_SUPERSEDED,
    TIMELINE_DESCRIPTION_VULNERABLE_IMAGE,
    TimelineStatus,
    WorkflowStatus,
    WorkflowType,
)
from app.services.cd_workflow import (
    CdWorkflowCommonService,
    extract_timeline_failed_status_details,
)
from app.services.events import CD_TRIGGER_TOPIC, PubSubMsg, TriggerMessageRouter
from app.services.metrics import DeploymentMetricsSink


@pytest.fixture
def cd_service(test_db):
    return CdWorkflowCommonService(test_db)


def timelines_of(test_db, runner_id):
    return (
        test_db.query(PipelineStatusTimeline)
        .filter(PipelineStatusTimeline.cd_workflow_runner_id == runner_id)
        .all()
    )


def test_supersede_fails_in_flight_runs_only(test_db, cd_service, make_pipeline, make_runner):
    pipeline = make_pipeline()
    running = make_runner(pipeline, status=WorkflowStatus.RUNNING.value)
    succeeded = make_runner(pipeline, status=WorkflowStatus.SUCCEEDED.value)
    current = make_runner(pipeline, status=WorkflowStatus.STARTING.value)

    superseded = cd_service.supersede_previous_deployments(
        current.id, pipeline.id, datetime.utcnow(), 7
    )

    assert [r.id for r in superseded] == [running.id]
    test_db.refresh(running)
    test_db.refresh(succeeded)
    test_db.refresh(current)
    assert running.status == WorkflowStatus.FAILED.value
    assert running.message == "deployment superseded"
    assert running.finished_on is not None
    assert running.updated_by == 7
    assert succeeded.status == WorkflowStatus.SUCCEEDED.value
    assert current.status == WorkflowStatus.STARTING.value

    entries = timelines_of(test_db, running.id)
    assert [e.status for e in entries] == [TimelineStatus.DEPLOYMENT_SUPERSEDED.value]
    assert entries[0].status_detail == TIMELINE_DESCRIPTION_DEPLOYMENT_SUPERSEDED
    assert timelines_of(test_db, succeeded.id) == []


def test_supersede_ignores_pre_and_post_runs(test_db, cd_service, make_pipeline, make_runner):
    pipeline = make_pipeline()
    pre = make_runner(pipeline, workflow_type=WorkflowType.PRE.value)
    current = make_runner(pipeline, status=WorkflowStatus.STARTING.value)

    assert cd_service.supersede_previous_deployments(
        current.id, pipeline.id, datetime.utcnow(), 1
    ) == []
    test_db.refresh(pre)
    assert pre.status == WorkflowStatus.RUNNING.value


def test_supersede_rolls_back_as_a_whole(
    test_db, cd_service, make_pipeline, make_runner, monkeypatch
):
    pipeline = make_pipeline()
    first = make_runner(pipeline, status=WorkflowStatus.RUNNING.value)
    second = make_runner(pipeline, status=WorkflowStatus.PROGRESSING.value)
    current = make_runner(pipeline, status=WorkflowStatus.STARTING.value)

    def broken_save(timeline, tx_commit=True):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(cd_service.timeline_service, "save_timeline", broken_save)

    with pytest.raises(SQLAlchemyError):
        cd_service.supersede_previous_deployments(current.id, pipeline.id, datetime.utcnow(), 1)

    test_db.refresh(first)
    test_db.refresh(second)
    assert first.status == WorkflowStatus.RUNNING.value
    assert second.status == WorkflowStatus.PROGRESSING.value
    assert timelines_of(test_db, first.id) == []


def test_mark_failed_records_failure_timeline(test_db, cd_service, make_pipeline, make_runner):
    runner = make_runner(make_pipeline())

    changed = cd_service.mark_current_deployment_failed(
        runner, ExternalServiceError("argocd failed", detail="sync refused"), 3
    )

    assert changed is True
    assert runner.status == WorkflowStatus.FAILED.value
    assert runner.message == "sync refused"
    assert runner.finished_on is not None
    entries = timelines_of(test_db, runner.id)
    assert entries[0].status == TimelineStatus.DEPLOYMENT_FAILED.value
    assert entries[0].status_detail == "Deployment failed: sync refused"


def test_mark_failed_vulnerable_image(test_db, cd_service, make_pipeline, make_runner):
    runner = make_runner(make_pipeline())

    cd_service.mark_current_deployment_failed(runner, ControlPlaneError(FOUND_VULNERABILITY), 3)

    entries = timelines_of(test_db, runner.id)
    assert entries[0].status_detail == TIMELINE_DESCRIPTION_VULNERABLE_IMAGE


def test_mark_failed_superseded(test_db, cd_service, make_pipeline, make_runner):
    runner = make_runner(make_pipeline())

    cd_service.mark_current_deployment_failed(runner, DeploymentSupersededError(), 3)

    assert runner.message == "deployment superseded"
    entries = timelines_of(test_db, runner.id)
    assert entries[0].status == TimelineStatus.DEPLOYMENT_SUPERSEDED.value


def test_mark_failed_never_regresses_terminal_run(test_db, cd_service, make_pipeline, make_runner):
    runner = make_runner(make_pipeline(), status=WorkflowStatus.HEALTHY.value)

    changed = cd_service.mark_current_deployment_failed(runner, ControlPlaneError("late"), 3)

    assert changed is False
    test_db.refresh(runner)
    assert runner.status == WorkflowStatus.HEALTHY.value
    assert timelines_of(test_db, runner.id) == []


def test_mark_failed_pre_run_has_no_timeline(test_db, cd_service, make_pipeline, make_runner):
    runner = make_runner(make_pipeline(), workflow_type=WorkflowType.PRE.value)

    cd_service.mark_current_deployment_failed(runner, ControlPlaneError("hook failed"), 3)

    assert runner.status == WorkflowStatus.FAILED.value
    assert timelines_of(test_db, runner.id) == []


def test_mark_failed_emits_metric_when_enabled(test_db, make_pipeline, make_runner):
    service = CdWorkflowCommonService(
        test_db, metrics_sink=DeploymentMetricsSink(test_db, enabled=True)
    )
    runner = make_runner(make_pipeline())

    service.mark_deployment_failed_for_runner_id(runner.id, ControlPlaneError("boom"), 3)

    metric = test_db.query(DeploymentMetric).one()
    assert metric.runner_id == runner.id
    assert metric.status == WorkflowStatus.FAILED.value
    assert metric.app_name == "web"


def test_mark_failed_unknown_runner(cd_service):
    with pytest.raises(NotFoundError):
        cd_service.mark_deployment_failed_for_runner_id(999, ControlPlaneError("boom"), 1)


def test_update_non_terminal_status(test_db, cd_service, make_pipeline, make_runner):
    runner = make_runner(make_pipeline(), status=WorkflowStatus.STARTING.value)

    updated = cd_service.update_non_terminal_status_in_runner(
        runner.id, 4, WorkflowStatus.PROGRESSING.value
    )

    assert updated.status == WorkflowStatus.PROGRESSING.value
    assert updated.updated_by == 4


def test_update_non_terminal_status_rejects_terminal_target(cd_service, make_pipeline, make_runner):
    runner = make_runner(make_pipeline())

    with pytest.raises(UnsupportedOperationError):
        cd_service.update_non_terminal_status_in_runner(runner.id, 4, WorkflowStatus.FAILED.value)


def test_update_non_terminal_status_keeps_terminal_run(
    test_db, cd_service, make_pipeline, make_runner
):
    runner = make_runner(make_pipeline(), status=WorkflowStatus.FAILED.value)

    cd_service.update_non_terminal_status_in_runner(runner.id, 4, WorkflowStatus.PROGRESSING.value)

    test_db.refresh(runner)
    assert runner.status == WorkflowStatus.FAILED.value


def test_queued_runs_are_superseded(test_db, cd_service, make_pipeline, make_runner):
    pipeline = make_pipeline()
    queued = make_runner(pipeline, status=WorkflowStatus.QUEUED.value)
    current = make_runner(pipeline, status=WorkflowStatus.STARTING.value)

    ids = cd_service.update_previous_queued_runner_status(current.id, pipeline.id, 2)

    assert ids == [queued.id]
    test_db.refresh(queued)
    assert queued.status == WorkflowStatus.FAILED.value
    assert queued.message == "deployment superseded"
    assert [e.status for e in timelines_of(test_db, queued.id)] == [
        TimelineStatus.DEPLOYMENT_SUPERSEDED.value
    ]


def test_trigger_validation(cd_service, make_pipeline, make_runner):
    make_runner(make_pipeline(), reference_id="msg-1")
    validate = cd_service.get_trigger_validate_funcs()[0]

    assert validate(PubSubMsg(msg_id="msg-1", msg_deliver_count=1)) is True
    assert validate(PubSubMsg(msg_id="msg-1", msg_deliver_count=2)) is False
    assert validate(PubSubMsg(msg_id="msg-2", msg_deliver_count=3)) is True


def test_handle_trigger_message_creates_run_and_fences_older(
    test_db, cd_service, make_pipeline, make_runner
):
    pipeline = make_pipeline()
    older = make_runner(pipeline, status=WorkflowStatus.RUNNING.value)

    runner = cd_service.handle_trigger_message(
        PubSubMsg(msg_id="msg-9", data={"pipeline_id": pipeline.id, "triggered_by": 5})
    )

    assert runner.status == WorkflowStatus.STARTING.value
    assert runner.reference_id == "msg-9"
    assert runner.name == "web-dev-deploy"
    assert len(cd_service.stage_service.get_workflow_stages(runner.id, "DEPLOY")) == 3
    test_db.refresh(older)
    assert older.status == WorkflowStatus.FAILED.value
    assert [e.status for e in timelines_of(test_db, runner.id)] == [
        TimelineStatus.DEPLOYMENT_INITIATED.value
    ]
    histories = test_db.query(ConfigMapHistory).filter_by(pipeline_id=pipeline.id).all()
    assert {h.kind for h in histories} == {"CONFIGMAP", "SECRET"}
    assert all(h.deployed_on == runner.started_on for h in histories)


def test_handle_trigger_message_unknown_pipeline(cd_service):
    with pytest.raises(NotFoundError):
        cd_service.handle_trigger_message(PubSubMsg(msg_id="x", data={"pipeline_id": 42}))


def test_redelivered_trigger_creates_one_run(test_db, cd_service, make_pipeline):
    pipeline = make_pipeline()
    router = TriggerMessageRouter()
    router.register_route(
        CD_TRIGGER_TOPIC, cd_service.handle_trigger_message, cd_service.get_trigger_validate_funcs()
    )
    data = {"pipeline_id": pipeline.id, "triggered_by": 1}

    first = router.dispatch(CD_TRIGGER_TOPIC, PubSubMsg("msg-5", 1, data))
    again = router.dispatch(CD_TRIGGER_TOPIC, PubSubMsg("msg-5", 2, data))

    assert isinstance(first, DeploymentRun)
    assert again is False
    assert test_db.query(DeploymentRun).filter_by(reference_id="msg-5").count() == 1


def test_failed_status_details_are_truncated():
    detail = extract_timeline_failed_status_details(ControlPlaneError("x" * 400))
    assert len(detail) == 255
    assert detail.startswith("Deployment failed: ")
    assert detail.endswith("...")
