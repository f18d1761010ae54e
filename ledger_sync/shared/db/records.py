"""Plain value objects returned by the local store."""

from dataclasses import dataclass
from enum import Enum


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


@dataclass(frozen=True)
class CredentialInfo:
    """Metadata for one registered API credential. The secret is never held here."""

    identity_id: str
    fingerprint: str
    created_at: int  # epoch ms
    display_name: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or f"Key ...{self.fingerprint}"


@dataclass(frozen=True)
class SyncTaskRecord:
    id: str
    credential_id: str
    date: str
    status: TaskStatus
    created_at: int
    completed_at: int | None = None


@dataclass(frozen=True)
class FactFilter:
    """Filter for sales fact reads. Dates are inclusive ISO days."""

    start_date: str | None = None
    end_date: str | None = None
    app_id: int | None = None
    country_code: str | None = None
    credential_id: str | None = None


def make_task_id(credential_id: str, date: str) -> str:
    return f"{credential_id}|{date}"
