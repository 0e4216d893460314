"""End-to-end tests for LifecycleOrchestrator."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
from rich.console import Console

from stagegate.config import WorkflowSettings
from stagegate.errors import (
    StateChecklistIncompleteError,
    StateHistoryCorruptionError,
    StateTransitionError,
    StoreCorruptedError,
    ValidationError,
)
from stagegate.orchestrator import LifecycleOrchestrator
from stagegate.task_engine.model import TaskStatus, WorkflowStage
from stagegate.task_engine.state_engine import STAGES

S = WorkflowStage

EVIDENCE = {"type": "manual", "description": "Verified by hand", "manualNotes": "done"}


def _orchestrator(project: Path, **settings) -> LifecycleOrchestrator:
    return LifecycleOrchestrator.for_project(
        project,
        settings=WorkflowSettings(**settings),
        console=Console(file=io.StringIO(), width=200),
        display=False,
    )


@pytest.fixture
def project(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def wf(project: Path) -> LifecycleOrchestrator:
    return _orchestrator(project)


def _finish_current_stage(wf: LifecycleOrchestrator) -> None:
    task = wf.get_current_task()
    stage = task.current_stage
    checklist = wf.gate.load_stage_checklist(task.id, stage)
    for item in checklist.items:
        if item.required and not item.completed:
            evidence = EVIDENCE if item.evidence_required else None
            wf.mark_item_complete(item.id, evidence, stage=stage)


def _walk_to(wf: LifecycleOrchestrator, target: WorkflowStage) -> None:
    while wf.get_current_task().current_stage != target:
        _finish_current_stage(wf)
        current = wf.get_current_task().current_stage
        wf.update_state(STAGES[current.index + 1])


def _mirror(project: Path) -> dict:
    return json.loads((project / ".ai-context" / "current-task.json").read_text(encoding="utf-8"))


class TestCreateAndRead:
    def test_first_task_is_mirrored_with_checklist(self, wf: LifecycleOrchestrator, project: Path) -> None:
        task = wf.create_task("Implement the user profile page")

        assert task.status == TaskStatus.ACTIVE
        assert "UNDERSTANDING" in task.state_checklists
        mirror = _mirror(project)
        assert mirror["taskId"] == task.id
        assert mirror["workflow"]["currentState"] == "UNDERSTANDING"
        assert "UNDERSTANDING" in mirror["stateChecklists"]

    def test_queued_task_does_not_touch_mirror(self, wf: LifecycleOrchestrator, project: Path) -> None:
        first = wf.create_task("Implement the user profile page")
        second = wf.create_task("Write onboarding guide for users")

        assert second.status == TaskStatus.QUEUED
        assert second.state_checklists == {}
        assert _mirror(project)["taskId"] == first.id
        assert wf.get_current_task().id == first.id

    def test_no_active_task(self, wf: LifecycleOrchestrator) -> None:
        assert wf.get_current_task() is None
        with pytest.raises(ValidationError, match="No active task"):
            wf.update_state("DESIGNING")

    def test_manual_mirror_edit_is_overwritten(self, wf: LifecycleOrchestrator, project: Path) -> None:
        task = wf.create_task("Implement the user profile page")
        path = project / ".ai-context" / "current-task.json"
        edited = _mirror(project)
        edited["originalGoal"] = "A goal typed straight into the mirror"
        path.write_text(json.dumps(edited), encoding="utf-8")

        current = wf.get_current_task()

        assert current.goal == "Implement the user profile page"
        assert _mirror(project)["originalGoal"] == "Implement the user profile page"
        assert len(wf.mirror.list_backups()) == 1
        assert wf.store.get_task(task.id).goal == "Implement the user profile page"

    def test_corrupted_store_reads_active_task_from_mirror(
        self, wf: LifecycleOrchestrator, project: Path
    ) -> None:
        task = wf.create_task("Implement the user profile page")
        wf.store.store_path.write_text("{broken", encoding="utf-8")

        current = wf.get_current_task()

        assert current.id == task.id
        assert current.goal == task.goal
        assert wf.store.store_path.read_text(encoding="utf-8") == "{broken"

    def test_corrupted_store_without_mirror_raises(self, wf: LifecycleOrchestrator) -> None:
        wf.store.context_dir.mkdir(parents=True)
        wf.store.store_path.write_text("{broken", encoding="utf-8")
        with pytest.raises(StoreCorruptedError):
            wf.get_current_task()

    def test_invalid_stage_on_another_task_falls_back_to_mirror(self, wf: LifecycleOrchestrator) -> None:
        task = wf.create_task("Implement the user profile page")
        raw = json.loads(wf.store.store_path.read_text(encoding="utf-8"))
        raw["tasks"].append({
            "id": "task-1",
            "goal": "A long finished task from an older release",
            "status": "DONE",
            "createdAt": "2024-01-01T00:00:00+00:00",
            "completedAt": "2024-01-02T00:00:00+00:00",
            "workflow": {"currentState": "LEGACY", "stateHistory": []},
        })
        wf.store.store_path.write_text(json.dumps(raw), encoding="utf-8")

        current = wf.get_current_task()

        assert current.id == task.id
        assert current.current_stage == S.UNDERSTANDING
        with pytest.raises(StoreCorruptedError, match="LEGACY"):
            wf.create_task("Brand new unrelated task goal")


class TestUpdateTask:
    def test_adds_requirement_and_syncs_mirror(self, wf: LifecycleOrchestrator, project: Path) -> None:
        task = wf.create_task("Implement the user profile page")
        wf.update_task(task.id, add_requirement="REQ-7 avatar upload")
        wf.update_task(task.id, add_requirement="REQ-7 avatar upload")

        assert wf.store.get_task(task.id).requirements == ["REQ-7 avatar upload"]
        assert _mirror(project)["requirements"] == ["REQ-7 avatar upload"]

    def test_queued_task_cannot_be_updated(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page")
        queued = wf.create_task("Write onboarding guide for users")
        with pytest.raises(ValidationError, match="Only the active task"):
            wf.update_task(queued.id, goal="Write onboarding guide for admins")


class TestStateTransitions:
    def test_skipping_a_stage_is_rejected(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page")
        _finish_current_stage(wf)

        with pytest.raises(StateTransitionError) as exc:
            wf.update_state("IMPLEMENTING")

        message = str(exc.value)
        assert "UNDERSTANDING -> IMPLEMENTING" in message
        assert "DESIGNING" in message
        assert exc.value.next_stage == S.DESIGNING
        assert wf.get_current_task().current_stage == S.UNDERSTANDING

    def test_backward_and_same_stage_rejected(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page")
        _walk_to(wf, S.DESIGNING)
        with pytest.raises(StateTransitionError):
            wf.update_state("UNDERSTANDING")
        with pytest.raises(StateTransitionError):
            wf.update_state("DESIGNING")

    def test_incomplete_checklist_blocks_transition(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page")
        wf.mark_item_complete("understand-requirements")

        with pytest.raises(StateChecklistIncompleteError) as exc:
            wf.update_state("DESIGNING")

        assert exc.value.incomplete_item_ids() == ["identify-ambiguities", "confirm-understanding"]
        assert wf.get_current_task().current_stage == S.UNDERSTANDING

    def test_transition_records_history_and_next_checklist(
        self, wf: LifecycleOrchestrator, project: Path
    ) -> None:
        wf.create_task("Implement the user profile page")
        _finish_current_stage(wf)

        change = wf.update_state("designing")

        assert change.from_stage == S.UNDERSTANDING
        assert change.to_stage == S.DESIGNING
        assert change.progress == 20
        assert [i.id for i in change.checklist.items] == [
            "create-design-doc",
            "design-approval",
            "plan-implementation",
        ]
        workflow = change.task.workflow
        assert workflow.current_state == S.DESIGNING
        assert workflow.history_states() == [S.UNDERSTANDING]
        mirror = _mirror(project)
        assert mirror["workflow"]["currentState"] == "DESIGNING"
        assert "DESIGNING" in mirror["stateChecklists"]

    def test_rapid_change_warns_but_proceeds(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page")
        _finish_current_stage(wf)

        change = wf.update_state(S.DESIGNING)

        assert any("Rapid state change" in w for w in change.warnings)
        assert change.task.current_stage == S.DESIGNING

    def test_no_rate_warning_when_disabled(self, project: Path) -> None:
        wf = _orchestrator(project, rate_limit_seconds=0)
        wf.create_task("Implement the user profile page")
        _finish_current_stage(wf)
        assert wf.update_state(S.DESIGNING).warnings == []

    def test_missing_review_artifacts_only_warn(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page")
        _walk_to(wf, S.TESTING)
        _finish_current_stage(wf)

        change = wf.update_state(S.REVIEWING)

        assert change.to_stage == S.REVIEWING
        assert any("REVIEWING requires one of" in w for w in change.warnings)

    def test_configured_prerequisite_blocks_other_stages(self, project: Path) -> None:
        wf = _orchestrator(project, prerequisites={"DESIGNING": ["docs/brief.md"]})
        wf.create_task("Implement the user profile page")
        _finish_current_stage(wf)

        with pytest.raises(ValidationError, match="Prerequisite not met"):
            wf.update_state(S.DESIGNING)

        (project / "docs").mkdir()
        (project / "docs" / "brief.md").write_text("brief", encoding="utf-8")
        assert wf.update_state(S.DESIGNING).to_stage == S.DESIGNING

    def test_corrupted_history_is_reported(self, wf: LifecycleOrchestrator, project: Path) -> None:
        context = project / ".ai-context"
        context.mkdir()
        stamp = "2024-01-01T00:00:00+00:00"
        (context / "tasks.json").write_text(
            json.dumps({
                "tasks": [{
                    "id": "task-1",
                    "goal": "Implement the export feature",
                    "status": "ACTIVE",
                    "priority": "MEDIUM",
                    "createdAt": stamp,
                    "workflow": {
                        "currentState": "DESIGNING",
                        "stateEnteredAt": stamp,
                        "stateHistory": [
                            {"state": "UNDERSTANDING", "enteredAt": stamp},
                            {"state": "DESIGNING", "enteredAt": stamp},
                        ],
                    },
                }],
                "activeTaskId": "task-1",
            }),
            encoding="utf-8",
        )

        with pytest.raises(StateHistoryCorruptionError, match="State history corrupted"):
            wf.update_state(S.IMPLEMENTING)

    def test_checklists_not_enforced_when_disabled(self, project: Path) -> None:
        wf = _orchestrator(project, enforce_checklists=False, prerequisites={})
        wf.create_task("Implement the user profile page")
        for stage in STAGES[1:]:
            wf.update_state(stage)
        assert wf.get_current_task().current_stage == S.READY_TO_COMMIT

    def test_display_prints_new_checklist(self, project: Path) -> None:
        console = Console(file=io.StringIO(), width=200)
        wf = LifecycleOrchestrator.for_project(project, console=console)
        wf.create_task("Implement the user profile page")
        _finish_current_stage(wf)

        wf.update_state(S.DESIGNING)

        assert "Checklist: DESIGNING" in console.file.getvalue()


class TestCompletion:
    def test_full_walk_completes_and_promotes_next(self, wf: LifecycleOrchestrator, project: Path) -> None:
        first = wf.create_task("Implement the user profile page", estimated_time="2h")
        second = wf.create_task("Write onboarding guide for users")

        _walk_to(wf, S.READY_TO_COMMIT)
        workflow = wf.get_current_task().workflow
        assert workflow.history_states() == list(STAGES[:-1])
        assert wf.engine.analyze_workflow(workflow)["complete"] is True

        _finish_current_stage(wf)
        result = wf.complete_task()

        assert result.completed.id == first.id
        assert result.completed.status == TaskStatus.DONE
        assert result.time_comparison["status"] == "under"
        assert result.next_active is not None and result.next_active.id == second.id
        assert result.next_active.current_stage == S.UNDERSTANDING
        assert "UNDERSTANDING" in result.next_active.state_checklists
        assert _mirror(project)["taskId"] == second.id
        assert wf.get_current_task().id == second.id
        assert len(wf.mirror.list_backups()) >= 1

    def test_completing_last_task(self, wf: LifecycleOrchestrator, project: Path) -> None:
        task = wf.create_task("Implement the user profile page")
        _walk_to(wf, S.READY_TO_COMMIT)
        _finish_current_stage(wf)

        result = wf.complete_task()

        assert result.next_active is None
        assert wf.get_current_task() is None
        mirror = _mirror(project)
        assert mirror["taskId"] == task.id
        assert mirror["status"] == "completed"
        assert mirror["completedAt"]

    def test_completion_is_idempotent(self, wf: LifecycleOrchestrator) -> None:
        task = wf.create_task("Implement the user profile page")
        _walk_to(wf, S.READY_TO_COMMIT)
        _finish_current_stage(wf)
        wf.complete_task(task.id)

        again = wf.complete_task(task.id)

        assert again.already_completed is True
        assert again.completed.status == TaskStatus.DONE

    def test_cannot_complete_before_final_stage(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page")
        with pytest.raises(ValidationError, match="must reach READY_TO_COMMIT"):
            wf.complete_task()

    def test_final_checklist_must_be_complete(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page")
        _walk_to(wf, S.READY_TO_COMMIT)
        with pytest.raises(StateChecklistIncompleteError, match="all-tests-passing"):
            wf.complete_task()


class TestSwitchingAndReporting:
    def test_activate_switches_and_preserves_stage(self, wf: LifecycleOrchestrator, project: Path) -> None:
        first = wf.create_task("Implement the user profile page")
        second = wf.create_task("Write onboarding guide for users")
        _walk_to(wf, S.DESIGNING)

        activated = wf.activate_task(second.id)
        assert activated.current_stage == S.UNDERSTANDING
        assert _mirror(project)["taskId"] == second.id

        back = wf.activate_task(first.id)
        assert back.current_stage == S.DESIGNING
        assert back.workflow.history_states() == [S.UNDERSTANDING]

    def test_progress_report(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page", estimated_time="1 day")
        _walk_to(wf, S.DESIGNING)

        report = wf.get_progress_report()

        assert report["workflow"]["current"] == "DESIGNING"
        assert report["workflow"]["progress"] == 20
        assert report["nextStage"] == "IMPLEMENTING"
        assert report["checklist"] == {
            "completed": 0,
            "total": 3,
            "requiredCompleted": 0,
            "requiredTotal": 2,
        }
        assert report["estimate"] == "8.0h"

    def test_progress_report_without_task(self, wf: LifecycleOrchestrator) -> None:
        assert wf.get_progress_report() is None

    def test_list_tasks_passes_filters(self, wf: LifecycleOrchestrator) -> None:
        wf.create_task("Implement the user profile page")
        queued = wf.create_task("Write onboarding guide for users")
        assert [t.id for t in wf.list_tasks(status="QUEUED")] == [queued.id]
