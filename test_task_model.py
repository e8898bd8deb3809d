"""Tests for task_model.py."""

from datetime import date

import pytest

from task_model import Project, SortMode, Task, TaskTag, TaskType, TimeSpend, generate_id


@pytest.fixture
def project():
    project = Project(name="Work")
    project.task_tags.insert("tag-a", TaskTag(name="a", color="#111111"))
    project.add_task("t1", "first")
    project.add_task("t2", "second", tags={"tag-a"})
    project.add_task("t0", "zeroth", create_at_top=True)
    return project


class TestTimeSpend:
    """Tests for TimeSpend."""

    def test_equality_uses_whole_seconds(self):
        assert TimeSpend(10.2) == TimeSpend(10.9)
        assert TimeSpend(10.9) != TimeSpend(11.0)

    def test_tracking_accumulates_on_stop(self, monkeypatch):
        clock = {"now": 100.0}
        monkeypatch.setattr("task_model.time.monotonic", lambda: clock["now"])
        spend = TimeSpend(1.0)
        spend.start()
        assert spend.is_tracking
        clock["now"] = 105.5
        assert spend.get_seconds() == pytest.approx(6.5)
        spend.stop()
        assert not spend.is_tracking
        assert spend.offset_seconds == pytest.approx(6.5)

    def test_tracking_is_not_compared(self):
        tracking = TimeSpend(3.0)
        tracking.start()
        assert tracking == TimeSpend(3.0)


class TestTask:
    """Tests for Task."""

    def test_matches_filter(self):
        task = Task(name="x", tags={"a", "b"})
        assert task.matches_filter(set())
        assert task.matches_filter({"a"})
        assert not task.matches_filter({"a", "c"})

    def test_dict_round_trip(self):
        task = Task(
            name="x",
            description="d",
            needed_time_minutes=15,
            time_spend=TimeSpend(42.0),
            due_date=date(2026, 3, 1),
            tags={"b", "a"},
        )
        data = task.to_dict()
        assert data["tags"] == ["a", "b"]
        assert data["due_date"] == "2026-03-01"
        assert Task.from_dict(data) == task

    def test_from_dict_fills_defaults(self):
        task = Task.from_dict({"name": "only name"})
        assert task == Task(name="only name")

    def test_from_dict_rejects_non_object(self):
        with pytest.raises(TypeError, match="task must be a JSON object"):
            Task.from_dict(["name"])


class TestProject:
    """Tests for Project."""

    def test_add_task_respects_create_at_top(self, project):
        assert list(project.todo_tasks) == ["t0", "t1", "t2"]

    def test_get_task_and_type(self, project):
        project.set_task_done("t1")
        task, task_type = project.get_task_and_type("t1")
        assert task.name == "first"
        assert task_type is TaskType.DONE
        assert task_type.is_done()
        assert project.get_task("missing") is None

    def test_set_todo_and_done_move_between_collections(self, project):
        project.set_task_done("t2")
        assert "t2" in project.done_tasks
        assert "t2" not in project.todo_tasks
        project.set_task_todo("t2")
        assert list(project.todo_tasks) == ["t0", "t1", "t2"]
        assert project.done_tasks.is_empty()

    def test_source_code_todo_can_be_done(self, project):
        project.source_code_todos.insert("s1", Task(name="fix me"))
        project.set_task_done("s1")
        assert "s1" in project.done_tasks

    def test_setters_ignore_missing_tasks(self, project):
        project.set_task_name("missing", "x")
        project.set_task_due_date("missing", date(2026, 1, 1))
        project.toggle_task_tag("missing", "tag-a")
        project.start_task_time_spend("missing")
        assert project.get_task("missing") is None

    def test_toggle_task_tag(self, project):
        project.toggle_task_tag("t1", "tag-a")
        assert project.get_task("t1").tags == {"tag-a"}
        project.toggle_task_tag("t1", "tag-a")
        assert project.get_task("t1").tags == set()

    def test_start_time_spend_creates_clock(self, project):
        project.start_task_time_spend("t1")
        assert project.get_task("t1").time_spend.is_tracking
        project.stop_task_time_spend("t1")
        assert not project.get_task("t1").time_spend.is_tracking

    def test_completion_percentage(self, project):
        assert project.completion_percentage() == 0.0
        project.set_task_done("t0")
        assert project.completion_percentage() == pytest.approx(1 / 3)
        assert project.total_tasks() == 3

    def test_iter_tasks_order(self, project):
        project.source_code_todos.insert("s1", Task(name="src"))
        project.set_task_done("t0")
        assert [task_id for task_id, _task, _type in project.iter_tasks()] == ["t1", "t2", "s1", "t0"]

    def test_dict_round_trip_keeps_order(self, project):
        project.sort_mode = SortMode.DUE_DATE
        project.source_code_directory = "/src"
        restored = Project.from_dict(project.to_dict())
        assert restored == project
        assert list(restored.todo_tasks) == ["t0", "t1", "t2"]

    def test_from_dict_defaults_missing_source_code_directory(self):
        restored = Project.from_dict({"name": "Old"})
        assert restored.source_code_directory is None
        assert restored.sort_mode is SortMode.MANUAL
        assert restored.total_tasks() == 0


def test_generate_id_is_unique():
    assert generate_id() != generate_id()
    assert len(generate_id()) == 32
