"""Tests for the Celery app and periodic engine tasks."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from sequencer.tasks import engine_tasks
from sequencer.tasks.celery_app import celery_app


class TestBeatSchedule:
    def test_periodic_tasks_scheduled(self):
        schedule = celery_app.conf.beat_schedule
        tasks = {entry["task"] for entry in schedule.values()}
        assert tasks == {
            "sequencer.tasks.engine_tasks.process_due_enrollments_task",
            "sequencer.tasks.engine_tasks.archive_inactive_nurture_task",
            "sequencer.tasks.engine_tasks.advance_nurture_cadence_task",
        }

    def test_due_sweep_interval_from_settings(self):
        from sequencer.config import get_settings

        entry = celery_app.conf.beat_schedule["process-due-enrollments"]
        assert entry["schedule"] == float(get_settings().process_interval_seconds)

    def test_tasks_registered(self):
        for name in (
            "sequencer.tasks.engine_tasks.process_due_enrollments_task",
            "sequencer.tasks.engine_tasks.archive_inactive_nurture_task",
            "sequencer.tasks.engine_tasks.advance_nurture_cadence_task",
        ):
            assert name in celery_app.tasks


class TestTaskBodies:
    def test_process_due_returns_stats(self):
        stats = {"processed": 2, "errors": 0, "skipped": 1}
        with patch.object(engine_tasks, "_process_due", AsyncMock(return_value=stats)):
            assert engine_tasks.process_due_enrollments_task() == stats

    def test_process_due_database_down(self):
        error = OperationalError("SELECT 1", {}, Exception("connection refused"))
        with patch.object(engine_tasks, "_process_due", AsyncMock(side_effect=error)):
            with pytest.raises(OperationalError):
                engine_tasks.process_due_enrollments_task()

    def test_archive(self):
        with patch.object(engine_tasks, "_archive_nurture", AsyncMock(return_value=4)):
            assert engine_tasks.archive_inactive_nurture_task() == 4

    def test_cadence(self):
        with patch.object(engine_tasks, "_advance_cadence", AsyncMock(return_value=7)):
            assert engine_tasks.advance_nurture_cadence_task() == 7
