from agman.state.store import JsonRecordStore, PersistenceError
from agman.state.task import LinkedPr, Task, TaskNotFoundError, TaskRecord, TaskStatus

__all__ = [
    "JsonRecordStore",
    "LinkedPr",
    "PersistenceError",
    "Task",
    "TaskNotFoundError",
    "TaskRecord",
    "TaskStatus",
]
