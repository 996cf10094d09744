"""Workflow access control."""

from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from workforge.errors import PermissionDenied

_log = logging.getLogger(__name__)

SYSTEM_OWNER = "system"


class WorkflowPermission(str, Enum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    EXECUTE = "execute"


class WorkflowACL(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow_id: str = Field(alias="workflowId")
    owner: str
    editors: list[str] = Field(default_factory=list)
    viewers: list[str] = Field(default_factory=list)
    executors: list[str] = Field(default_factory=list)
    is_public: bool = Field(default=False, alias="isPublic")


def is_permitted(acl: WorkflowACL | None, user_id: str, permission: WorkflowPermission) -> bool:
    # No entry: shipped/system workflow, open for view, execute and create.
    if acl is None:
        return permission in (
            WorkflowPermission.VIEW,
            WorkflowPermission.EXECUTE,
            WorkflowPermission.CREATE,
        )

    if acl.owner == user_id:
        return True

    if acl.owner == SYSTEM_OWNER:
        return permission in (WorkflowPermission.VIEW, WorkflowPermission.EXECUTE)

    if permission == WorkflowPermission.VIEW:
        return acl.is_public or user_id in acl.viewers or user_id in acl.editors
    if permission == WorkflowPermission.EXECUTE:
        return acl.is_public or user_id in acl.executors or user_id in acl.editors
    if permission == WorkflowPermission.EDIT:
        return user_id in acl.editors
    if permission == WorkflowPermission.DELETE:
        return False
    if permission == WorkflowPermission.CREATE:
        return True
    return False


class ACLStore:
    """In-memory ACL table, optionally backed by a JSON file."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._acls: dict[str, WorkflowACL] = {}
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        for workflow_id, entry in raw.items():
            self._acls[workflow_id] = WorkflowACL.model_validate(entry)

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {wid: acl.model_dump(by_alias=True) for wid, acl in self._acls.items()}
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def get(self, workflow_id: str) -> WorkflowACL | None:
        with self._lock:
            return self._acls.get(workflow_id)

    def set(self, acl: WorkflowACL) -> None:
        with self._lock:
            self._acls[acl.workflow_id] = acl
            self._save()

    def remove(self, workflow_id: str) -> None:
        with self._lock:
            self._acls.pop(workflow_id, None)
            self._save()

    def check_permission(
        self, workflow_id: str, user_id: str, permission: WorkflowPermission
    ) -> bool:
        return is_permitted(self.get(workflow_id), user_id, WorkflowPermission(permission))

    def assert_permission(
        self, workflow_id: str, user_id: str, permission: WorkflowPermission
    ) -> None:
        permission = WorkflowPermission(permission)
        if not self.check_permission(workflow_id, user_id, permission):
            _log.warning(
                "Permission denied: %s cannot %s workflow %s",
                user_id, permission.value, workflow_id,
            )
            raise PermissionDenied(
                f"User '{user_id}' does not have permission to {permission.value} "
                f"workflow '{workflow_id}'"
            )
