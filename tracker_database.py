"""The project tracker document: projects, serialization and file persistence."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, TypeVar, Union

from ordered_hash_map import OrderedHashMap
from task_model import (
    DEFAULT_COLOR,
    Project,
    ProjectId,
    SortMode,
    TaskId,
    TaskTag,
    TaskTagId,
    TimeSpend,
)

LOGGER = logging.getLogger(__name__)

FORMAT_VERSION = 1
DATABASE_FILENAME = "database.project_tracker"
MIN_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)

PathLike = Union[str, "os.PathLike[str]"]
T = TypeVar("T")


class LoadDatabaseError(Exception):
    """Raised when a database file cannot be loaded."""

    def __init__(self, filepath: PathLike, message: str) -> None:
        super().__init__(f"{message}: {filepath}")
        self.filepath = Path(filepath)


class DatabaseOpenError(LoadDatabaseError):
    """The file is missing or unreadable."""


class DatabaseParseError(LoadDatabaseError):
    """The file was read but does not contain a valid database."""


class SaveDatabaseError(Exception):
    """Raised when writing a database file fails."""

    def __init__(self, filepath: PathLike, message: str) -> None:
        super().__init__(f"{message}: {filepath}")
        self.filepath = Path(filepath)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """Ordered projects plus the time of their last modification.

    All mutations go through :meth:`modify`, which advances
    ``last_changed_time``. Synchronization compares these timestamps to pick
    the replica that wins.
    """

    def __init__(
        self,
        projects: Optional[OrderedHashMap[ProjectId, Project]] = None,
        last_changed_time: Optional[datetime] = None,
    ) -> None:
        self._projects: OrderedHashMap[ProjectId, Project] = (
            projects if projects is not None else OrderedHashMap()
        )
        self.last_changed_time: datetime = last_changed_time or MIN_TIMESTAMP
        self.last_saved_time: Optional[datetime] = None

    def __repr__(self) -> str:
        return f"Database(projects={len(self._projects)}, last_changed_time={self.last_changed_time.isoformat()})"

    # ---------- access ----------
    @property
    def projects(self) -> OrderedHashMap[ProjectId, Project]:
        """Read access. Mutate through :meth:`modify` only."""
        return self._projects

    def get_project(self, project_id: ProjectId) -> Optional[Project]:
        return self._projects.get(project_id)

    def modify(self, f: Callable[[OrderedHashMap[ProjectId, Project]], T]) -> T:
        """Run ``f`` on the projects and mark the document as changed.

        The timestamp advances even if ``f`` raises, since it may already
        have mutated the projects.
        """
        try:
            return f(self._projects)
        finally:
            self.last_changed_time = utc_now()

    def has_unsaved_changes(self) -> bool:
        if self.last_saved_time is None:
            return True
        return self.last_changed_time > self.last_saved_time

    def saved(self, time: Optional[datetime] = None) -> None:
        self.last_saved_time = time or utc_now()

    def has_same_content_as(self, other: "Database") -> bool:
        """Compare projects only; timestamps and running stopwatches are ignored."""
        return self._projects == other._projects

    # ---------- projects ----------
    def create_project(self, project_id: ProjectId, name: str, color: str = DEFAULT_COLOR) -> None:
        self.modify(lambda projects: projects.insert(project_id, Project(name=name, color=color)))

    def rename_project(self, project_id: ProjectId, new_name: str) -> None:
        def rename(projects: OrderedHashMap[ProjectId, Project]) -> None:
            project = projects.get(project_id)
            if project is not None:
                project.name = new_name

        self.modify(rename)

    def change_project_color(self, project_id: ProjectId, new_color: str) -> None:
        def recolor(projects: OrderedHashMap[ProjectId, Project]) -> None:
            project = projects.get(project_id)
            if project is not None:
                project.color = new_color

        self.modify(recolor)

    def change_project_sort_mode(self, project_id: ProjectId, sort_mode: SortMode) -> None:
        def change(projects: OrderedHashMap[ProjectId, Project]) -> None:
            project = projects.get(project_id)
            if project is not None:
                project.sort_mode = sort_mode

        self.modify(change)

    def delete_project(self, project_id: ProjectId) -> None:
        self.modify(lambda projects: projects.remove(project_id))

    def move_project_up(self, project_id: ProjectId) -> None:
        self.modify(lambda projects: projects.move_up(project_id))

    def move_project_down(self, project_id: ProjectId) -> None:
        self.modify(lambda projects: projects.move_down(project_id))

    def move_project_before_other(self, project_id: ProjectId, other_project_id: ProjectId) -> None:
        self.modify(lambda projects: projects.move_before_other(project_id, other_project_id))

    def move_project_to_end(self, project_id: ProjectId) -> None:
        self.modify(lambda projects: projects.move_to_end(project_id))

    def import_projects(self, imported: OrderedHashMap[ProjectId, Project]) -> None:
        """Append ``imported`` behind the existing projects (``imported`` ends up empty)."""
        self.modify(lambda projects: projects.append(imported))

    def clear(self) -> None:
        self.modify(lambda projects: projects.clear())

    # ---------- tasks ----------
    def _modify_project(self, project_id: ProjectId, f: Callable[[Project], Any]) -> None:
        def apply(projects: OrderedHashMap[ProjectId, Project]) -> None:
            project = projects.get(project_id)
            if project is not None:
                f(project)

        self.modify(apply)

    def create_task(
        self,
        project_id: ProjectId,
        task_id: TaskId,
        name: str,
        description: str = "",
        tags: Optional[Set[TaskTagId]] = None,
        due_date: Optional[date] = None,
        needed_time_minutes: Optional[int] = None,
        time_spend: Optional[TimeSpend] = None,
        create_at_top: bool = False,
    ) -> None:
        self._modify_project(
            project_id,
            lambda project: project.add_task(
                task_id,
                name,
                description=description,
                tags=tags,
                due_date=due_date,
                needed_time_minutes=needed_time_minutes,
                time_spend=time_spend,
                create_at_top=create_at_top,
            ),
        )

    def change_task_name(self, project_id: ProjectId, task_id: TaskId, new_name: str) -> None:
        self._modify_project(project_id, lambda project: project.set_task_name(task_id, new_name))

    def change_task_description(self, project_id: ProjectId, task_id: TaskId, new_description: str) -> None:
        self._modify_project(
            project_id, lambda project: project.set_task_description(task_id, new_description)
        )

    def set_task_todo(self, project_id: ProjectId, task_id: TaskId) -> None:
        self._modify_project(project_id, lambda project: project.set_task_todo(task_id))

    def set_task_done(self, project_id: ProjectId, task_id: TaskId) -> None:
        self._modify_project(project_id, lambda project: project.set_task_done(task_id))

    def change_task_needed_time(
        self, project_id: ProjectId, task_id: TaskId, minutes: Optional[int]
    ) -> None:
        self._modify_project(project_id, lambda project: project.set_task_needed_time(task_id, minutes))

    def change_task_time_spend(
        self, project_id: ProjectId, task_id: TaskId, time_spend: Optional[TimeSpend]
    ) -> None:
        self._modify_project(
            project_id, lambda project: project.set_task_time_spend(task_id, time_spend)
        )

    def start_task_time_spend(self, project_id: ProjectId, task_id: TaskId) -> None:
        self._modify_project(project_id, lambda project: project.start_task_time_spend(task_id))

    def stop_task_time_spend(self, project_id: ProjectId, task_id: TaskId) -> None:
        self._modify_project(project_id, lambda project: project.stop_task_time_spend(task_id))

    def change_task_due_date(
        self, project_id: ProjectId, task_id: TaskId, due_date: Optional[date]
    ) -> None:
        self._modify_project(project_id, lambda project: project.set_task_due_date(task_id, due_date))

    def toggle_task_tag(self, project_id: ProjectId, task_id: TaskId, tag_id: TaskTagId) -> None:
        self._modify_project(project_id, lambda project: project.toggle_task_tag(task_id, tag_id))

    def move_task_before_other(self, project_id: ProjectId, task_id: TaskId, other_task_id: TaskId) -> None:
        """Reorder within whichever collection holds both tasks."""

        def move(project: Project) -> None:
            for tasks in (project.todo_tasks, project.done_tasks, project.source_code_todos):
                if task_id in tasks and other_task_id in tasks:
                    tasks.move_before_other(task_id, other_task_id)
                    return

        self._modify_project(project_id, move)

    def move_todo_task_to_end(self, project_id: ProjectId, task_id: TaskId) -> None:
        self._modify_project(project_id, lambda project: project.todo_tasks.move_to_end(task_id))

    def delete_task(self, project_id: ProjectId, task_id: TaskId) -> None:
        self._modify_project(project_id, lambda project: project.remove_task(task_id))

    def delete_done_tasks(self, project_id: ProjectId) -> None:
        self._modify_project(project_id, lambda project: project.done_tasks.clear())

    def move_task_to_project(
        self,
        task_id: TaskId,
        source_project_id: ProjectId,
        target_project_id: ProjectId,
    ) -> None:
        """Move a task to another project, keeping its collection.

        Tags of the task unknown to the target project are copied over with
        their id, name and color.
        """

        def move(projects: OrderedHashMap[ProjectId, Project]) -> None:
            if source_project_id == target_project_id:
                return
            source = projects.get(source_project_id)
            target = projects.get(target_project_id)
            if source is None or target is None:
                return
            removed = source.remove_task(task_id)
            if removed is None:
                return
            task_type, task = removed
            for tag_id in sorted(task.tags):
                tag = source.task_tags.get(tag_id)
                if tag is not None and tag_id not in target.task_tags:
                    target.task_tags.insert(tag_id, TaskTag(name=tag.name, color=tag.color))
            target.tasks_of_type(task_type).insert(task_id, task)

        self.modify(move)

    # ---------- tags ----------
    def create_task_tag(
        self, project_id: ProjectId, tag_id: TaskTagId, name: str, color: str = DEFAULT_COLOR
    ) -> None:
        self._modify_project(
            project_id, lambda project: project.task_tags.insert(tag_id, TaskTag(name=name, color=color))
        )

    def rename_task_tag(self, project_id: ProjectId, tag_id: TaskTagId, new_name: str) -> None:
        def rename(project: Project) -> None:
            tag = project.task_tags.get(tag_id)
            if tag is not None:
                tag.name = new_name

        self._modify_project(project_id, rename)

    def change_task_tag_color(self, project_id: ProjectId, tag_id: TaskTagId, new_color: str) -> None:
        def recolor(project: Project) -> None:
            tag = project.task_tags.get(tag_id)
            if tag is not None:
                tag.color = new_color

        self._modify_project(project_id, recolor)

    def delete_task_tag(self, project_id: ProjectId, tag_id: TaskTagId) -> None:
        """Delete the tag and strip it from every task of the project."""

        def delete(project: Project) -> None:
            if project.task_tags.remove(tag_id) is None:
                return
            for task in project.iter_tasks_mut():
                task.tags.discard(tag_id)

        self._modify_project(project_id, delete)

    # ---------- serialization ----------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": FORMAT_VERSION,
            "last_modified": self.last_changed_time.isoformat(),
            "projects": self._projects.to_dict(Project.to_dict),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Database":
        if not isinstance(data, dict):
            raise TypeError("database must be a JSON object")
        version = data.get("version", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported database format version: {version}")
        projects_data = data.get("projects", {})
        if not isinstance(projects_data, dict):
            raise TypeError("projects must be a JSON object")
        last_modified = data.get("last_modified")
        return cls(
            projects=OrderedHashMap.from_dict(projects_data, Project.from_dict),
            last_changed_time=MIN_TIMESTAMP if last_modified is None else parse_timestamp(last_modified),
        )

    def to_binary(self) -> bytes:
        """Compact canonical encoding used for the database file and the wire."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_binary(cls, data: bytes) -> "Database":
        """Decode :meth:`to_binary` output; raises ``ValueError`` on bad input."""
        try:
            return cls.from_dict(json.loads(data.decode("utf-8")))
        except (UnicodeDecodeError, KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid database binary: {exc}") from exc

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    @classmethod
    def from_json(cls, text: str) -> "Database":
        try:
            return cls.from_dict(json.loads(text))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid database JSON: {exc}") from exc

    # ---------- files ----------
    @classmethod
    def load_from(cls, filepath: PathLike) -> "Database":
        data = read_file(filepath)
        try:
            database = cls.from_binary(data)
        except ValueError as exc:
            raise DatabaseParseError(filepath, str(exc)) from exc
        database.saved(database.last_changed_time)
        return database

    @classmethod
    def load_json(cls, filepath: PathLike) -> "Database":
        data = read_file(filepath)
        try:
            return cls.from_json(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DatabaseParseError(filepath, str(exc)) from exc

    def save(self, filepath: PathLike) -> None:
        """Write :meth:`to_binary` to ``filepath`` and mark the document saved."""
        save_to(filepath, self.to_binary())
        self.saved()

    def export_as_json(self, filepath: PathLike) -> None:
        export_as_json(filepath, self.to_json())


def parse_timestamp(value: str) -> datetime:
    timestamp = datetime.fromisoformat(value)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp


def save_to(filepath: PathLike, data: bytes) -> None:
    """Atomically replace ``filepath`` with ``data``."""
    path = Path(filepath)
    directory = path.parent if str(path.parent) else Path(".")
    try:
        tmp_fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as exc:
        raise SaveDatabaseError(filepath, f"Failed to save database: {exc}") from exc
    try:
        with os.fdopen(tmp_fd, "wb") as fp:
            fp.write(data)
        os.replace(tmp_path, path)
        LOGGER.debug("database saved: %s (%d bytes)", path, len(data))
    except OSError as exc:
        raise SaveDatabaseError(filepath, f"Failed to save database: {exc}") from exc
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


def export_as_json(filepath: PathLike, text: str) -> None:
    save_to(filepath, text.encode("utf-8"))


def read_file(filepath: PathLike) -> bytes:
    try:
        with open(filepath, "rb") as fp:
            return fp.read()
    except OSError as exc:
        raise DatabaseOpenError(filepath, f"Failed to open database: {exc.strerror or exc}") from exc


__all__ = [
    "DATABASE_FILENAME",
    "Database",
    "DatabaseOpenError",
    "DatabaseParseError",
    "FORMAT_VERSION",
    "LoadDatabaseError",
    "MIN_TIMESTAMP",
    "SaveDatabaseError",
    "export_as_json",
    "parse_timestamp",
    "read_file",
    "save_to",
    "utc_now",
]
