"""
Module Registry -- which local data syncs, and where it lands remotely.

Each data domain (tasks, habits, bookmarks, calendar events) is a
DataModule: a name, a remote file name, and a read/write pair over
the local store. The table is fixed at construction; there is no API
to add or remove modules at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Sequence

from ..storage import LocalStore
from .models import SYNC_PREFIX


@dataclass(frozen=True)
class DataModule:
    """One independently synced slice of local state.

    Attributes:
        name: Module identifier used in results and the CLI.
        filename: Remote file name, before the sync prefix.
        read_local: Returns the module's JSON-serializable snapshot.
        write_local: Replaces local state with a pulled snapshot.
        storage_keys: Local store keys the module reads and writes.
    """

    name: str
    filename: str
    read_local: Callable[[], Any] = field(repr=False, compare=False)
    write_local: Callable[[Any], None] = field(repr=False, compare=False)
    storage_keys: tuple[str, ...] = ()

    @property
    def remote_path(self) -> str:
        return f"{SYNC_PREFIX}{self.filename}"


class ModuleRegistry:
    """Ordered, read-only table of DataModules."""

    def __init__(self, modules: Sequence[DataModule]) -> None:
        names = [m.name for m in modules]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate module names: {names}")
        self._modules = tuple(modules)

    def get(self, name: str) -> Optional[DataModule]:
        for module in self._modules:
            if module.name == name:
                return module
        return None

    def names(self) -> list[str]:
        return [m.name for m in self._modules]

    def storage_keys(self) -> list[str]:
        """Every local key any module touches, in registry order."""
        keys: list[str] = []
        for module in self._modules:
            for key in module.storage_keys:
                if key not in keys:
                    keys.append(key)
        return keys

    def __iter__(self) -> Iterator[DataModule]:
        return iter(self._modules)

    def __len__(self) -> int:
        return len(self._modules)


def _tasks_module(store: LocalStore) -> DataModule:
    def read() -> dict:
        return {
            "tasks": store.read_json("tasks", []),
            "taskGroups": store.read_json("taskGroups", []),
        }

    def write(data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        store.write_json("tasks", data.get("tasks") or [])
        store.write_json("taskGroups", data.get("taskGroups") or [])

    return DataModule("tasks", "tasks.json", read, write, ("tasks", "taskGroups"))


def _bookmarks_module(store: LocalStore) -> DataModule:
    def read() -> dict:
        data = store.read_json("bookmarks-data", {})
        if not isinstance(data, dict):
            data = {}
        return {
            "bookmarks": data.get("bookmarks") or [],
            "groups": data.get("groups") or [],
        }

    def write(data: Any) -> None:
        store.write_json("bookmarks-data", data)

    return DataModule(
        "bookmarks", "bookmarks.json", read, write, ("bookmarks-data",)
    )


def _list_module(store: LocalStore, name: str, filename: str, key: str) -> DataModule:
    return DataModule(
        name,
        filename,
        lambda: store.read_json(key, []),
        lambda data: store.write_json(key, data),
        (key,),
    )


def default_registry(store: LocalStore) -> ModuleRegistry:
    """Build the planner's four modules over ``store``."""
    return ModuleRegistry([
        _tasks_module(store),
        _list_module(store, "habits", "habits.json", "habits"),
        _bookmarks_module(store),
        _list_module(store, "calendarEvents", "calendar-events.json", "calendar-events"),
    ])
