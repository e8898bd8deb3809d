"""Projects, tasks and tags that make up the synchronized database.

Every collection is an :class:`OrderedHashMap`, so the user chosen order of
projects, tags and tasks survives serialization. Serialization goes through
``to_dict``/``from_dict`` pairs that always emit fields in the same order and
fill explicit defaults for fields added in later schema versions.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Set, Tuple

from ordered_hash_map import OrderedHashMap

ProjectId = str
TaskId = str
TaskTagId = str

DEFAULT_COLOR = "#4a9eff"


def generate_id() -> str:
    """Return a new random identifier (UUID4 as hex)."""
    return uuid.uuid4().hex


class SortMode(Enum):
    """How the todo tasks of a project are displayed."""

    MANUAL = "manual"
    DUE_DATE = "due_date"
    NEEDED_TIME = "needed_time"


class TaskType(Enum):
    """Which task collection of a project a task lives in."""

    TODO = "todo"
    DONE = "done"
    SOURCE_CODE_TODO = "source_code_todo"

    def is_done(self) -> bool:
        return self is TaskType.DONE


class TimeSpend:
    """Seconds spent on a task plus an optional running stopwatch.

    The running stopwatch is local state only: it is neither serialized nor
    compared, and equality uses whole seconds so that two replicas agree.
    """

    def __init__(self, offset_seconds: float = 0.0) -> None:
        self.offset_seconds = float(offset_seconds)
        self._tracking_start: Optional[float] = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TimeSpend):
            return NotImplemented
        return int(self.offset_seconds) == int(other.offset_seconds)

    def __hash__(self) -> int:
        return hash(int(self.offset_seconds))

    def __repr__(self) -> str:
        return f"TimeSpend(offset_seconds={self.offset_seconds!r}, tracking={self.is_tracking})"

    @property
    def is_tracking(self) -> bool:
        return self._tracking_start is not None

    def get_seconds(self) -> float:
        if self._tracking_start is None:
            return self.offset_seconds
        return self.offset_seconds + (time.monotonic() - self._tracking_start)

    def start(self) -> None:
        self.stop()
        self._tracking_start = time.monotonic()

    def stop(self) -> None:
        if self._tracking_start is not None:
            self.offset_seconds += time.monotonic() - self._tracking_start
            self._tracking_start = None


@dataclass
class Task:
    """A single task of a project."""

    name: str
    description: str = ""
    needed_time_minutes: Optional[int] = None
    time_spend: Optional[TimeSpend] = None
    due_date: Optional[date] = None
    tags: Set[TaskTagId] = field(default_factory=set)

    def matches_filter(self, tag_filter: Set[TaskTagId]) -> bool:
        """Return True if the task carries every tag of ``tag_filter``."""
        return all(tag_id in self.tags for tag_id in tag_filter)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "needed_time_minutes": self.needed_time_minutes,
            "time_spend": None if self.time_spend is None else self.time_spend.offset_seconds,
            "due_date": None if self.due_date is None else self.due_date.isoformat(),
            "tags": sorted(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        _require_mapping(data, "task")
        needed_time = data.get("needed_time_minutes")
        time_spend = data.get("time_spend")
        due_date = data.get("due_date")
        return cls(
            name=str(data["name"]),
            description=str(data.get("description", "")),
            needed_time_minutes=None if needed_time is None else int(needed_time),
            time_spend=None if time_spend is None else TimeSpend(float(time_spend)),
            due_date=None if due_date is None else date.fromisoformat(due_date),
            tags={str(tag_id) for tag_id in data.get("tags", [])},
        )


@dataclass
class TaskTag:
    """A named, colored label that tasks of the same project can carry."""

    name: str
    color: str = DEFAULT_COLOR

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "color": self.color}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskTag":
        _require_mapping(data, "task tag")
        return cls(name=str(data["name"]), color=str(data.get("color", DEFAULT_COLOR)))


@dataclass
class Project:
    """A project with its tags and its three task collections."""

    name: str
    color: str = DEFAULT_COLOR
    sort_mode: SortMode = SortMode.MANUAL
    task_tags: OrderedHashMap[TaskTagId, TaskTag] = field(default_factory=OrderedHashMap)
    todo_tasks: OrderedHashMap[TaskId, Task] = field(default_factory=OrderedHashMap)
    done_tasks: OrderedHashMap[TaskId, Task] = field(default_factory=OrderedHashMap)
    source_code_todos: OrderedHashMap[TaskId, Task] = field(default_factory=OrderedHashMap)
    source_code_directory: Optional[str] = None

    def _collections(self) -> Tuple[Tuple[TaskType, OrderedHashMap[TaskId, Task]], ...]:
        return (
            (TaskType.TODO, self.todo_tasks),
            (TaskType.DONE, self.done_tasks),
            (TaskType.SOURCE_CODE_TODO, self.source_code_todos),
        )

    def tasks_of_type(self, task_type: TaskType) -> OrderedHashMap[TaskId, Task]:
        return dict(self._collections())[task_type]

    def get_task(self, task_id: TaskId) -> Optional[Task]:
        found = self.get_task_and_type(task_id)
        return None if found is None else found[0]

    def get_task_and_type(self, task_id: TaskId) -> Optional[Tuple[Task, TaskType]]:
        for task_type, tasks in self._collections():
            task = tasks.get(task_id)
            if task is not None:
                return task, task_type
        return None

    def add_task(
        self,
        task_id: TaskId,
        name: str,
        description: str = "",
        tags: Optional[Set[TaskTagId]] = None,
        due_date: Optional[date] = None,
        needed_time_minutes: Optional[int] = None,
        time_spend: Optional[TimeSpend] = None,
        create_at_top: bool = False,
    ) -> None:
        task = Task(
            name=name,
            description=description,
            needed_time_minutes=needed_time_minutes,
            time_spend=time_spend,
            due_date=due_date,
            tags=set(tags or ()),
        )
        if create_at_top:
            self.todo_tasks.insert_at_top(task_id, task)
        else:
            self.todo_tasks.insert(task_id, task)

    def remove_task(self, task_id: TaskId) -> Optional[Tuple[TaskType, Task]]:
        for task_type, tasks in self._collections():
            task = tasks.remove(task_id)
            if task is not None:
                return task_type, task
        return None

    def set_task_name(self, task_id: TaskId, new_name: str) -> None:
        task = self.get_task(task_id)
        if task is not None:
            task.name = new_name

    def set_task_description(self, task_id: TaskId, new_description: str) -> None:
        task = self.get_task(task_id)
        if task is not None:
            task.description = new_description

    def set_task_todo(self, task_id: TaskId) -> None:
        task = self.done_tasks.remove(task_id)
        if task is not None:
            self.todo_tasks.insert(task_id, task)

    def set_task_done(self, task_id: TaskId) -> None:
        task = self.todo_tasks.remove(task_id)
        if task is None:
            task = self.source_code_todos.remove(task_id)
        if task is not None:
            self.done_tasks.insert(task_id, task)

    def set_task_needed_time(self, task_id: TaskId, minutes: Optional[int]) -> None:
        task = self.get_task(task_id)
        if task is not None:
            task.needed_time_minutes = minutes

    def set_task_time_spend(self, task_id: TaskId, time_spend: Optional[TimeSpend]) -> None:
        task = self.get_task(task_id)
        if task is not None:
            task.time_spend = time_spend

    def start_task_time_spend(self, task_id: TaskId) -> None:
        task = self.get_task(task_id)
        if task is None:
            return
        if task.time_spend is None:
            task.time_spend = TimeSpend(0.0)
        task.time_spend.start()

    def stop_task_time_spend(self, task_id: TaskId) -> None:
        task = self.get_task(task_id)
        if task is not None and task.time_spend is not None:
            task.time_spend.stop()

    def set_task_due_date(self, task_id: TaskId, due_date: Optional[date]) -> None:
        task = self.get_task(task_id)
        if task is not None:
            task.due_date = due_date

    def toggle_task_tag(self, task_id: TaskId, tag_id: TaskTagId) -> None:
        task = self.get_task(task_id)
        if task is None:
            return
        if tag_id in task.tags:
            task.tags.discard(tag_id)
        else:
            task.tags.add(tag_id)

    def total_tasks(self) -> int:
        return len(self.todo_tasks) + len(self.done_tasks) + len(self.source_code_todos)

    def completion_percentage(self) -> float:
        """Fraction (0.0 - 1.0) of tasks that are done."""
        done = len(self.done_tasks)
        if done == 0:
            return 0.0
        return done / self.total_tasks()

    def iter_tasks(self) -> Iterator[Tuple[TaskId, Task, TaskType]]:
        """Iterate todo tasks, then source code todos, then done tasks."""
        for task_id, task in self.todo_tasks.items():
            yield task_id, task, TaskType.TODO
        for task_id, task in self.source_code_todos.items():
            yield task_id, task, TaskType.SOURCE_CODE_TODO
        for task_id, task in self.done_tasks.items():
            yield task_id, task, TaskType.DONE

    def iter_tasks_mut(self) -> Iterator[Task]:
        for _task_type, tasks in self._collections():
            yield from tasks.values()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "color": self.color,
            "sort_mode": self.sort_mode.value,
            "task_tags": self.task_tags.to_dict(TaskTag.to_dict),
            "todo_tasks": self.todo_tasks.to_dict(Task.to_dict),
            "done_tasks": self.done_tasks.to_dict(Task.to_dict),
            "source_code_todos": self.source_code_todos.to_dict(Task.to_dict),
            "source_code_directory": self.source_code_directory,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        _require_mapping(data, "project")
        source_code_directory = data.get("source_code_directory")
        return cls(
            name=str(data["name"]),
            color=str(data.get("color", DEFAULT_COLOR)),
            sort_mode=SortMode(data.get("sort_mode", SortMode.MANUAL.value)),
            task_tags=_ordered_from_dict(data.get("task_tags", {}), TaskTag.from_dict, "task_tags"),
            todo_tasks=_ordered_from_dict(data.get("todo_tasks", {}), Task.from_dict, "todo_tasks"),
            done_tasks=_ordered_from_dict(data.get("done_tasks", {}), Task.from_dict, "done_tasks"),
            source_code_todos=_ordered_from_dict(
                data.get("source_code_todos", {}), Task.from_dict, "source_code_todos"
            ),
            source_code_directory=None if source_code_directory is None else str(source_code_directory),
        )


def _require_mapping(data: Any, what: str) -> None:
    if not isinstance(data, dict):
        raise TypeError(f"{what} must be a JSON object, got {type(data).__name__}")


def _ordered_from_dict(data: Any, decode_value, what: str) -> OrderedHashMap:
    _require_mapping(data, what)
    return OrderedHashMap.from_dict(data, decode_value)


__all__ = [
    "DEFAULT_COLOR",
    "Project",
    "ProjectId",
    "SortMode",
    "Task",
    "TaskId",
    "TaskTag",
    "TaskTagId",
    "TaskType",
    "TimeSpend",
    "generate_id",
]
