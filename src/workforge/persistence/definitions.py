"""Versioned workflow definition stores."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Union

from workforge.config.diff import diff_definitions
from workforge.config.loader import DefinitionLoader
from workforge.config.schema import LimitsConfig, WorkflowDefinition
from workforge.errors import DefinitionError
from workforge.observe.audit import AuditLog
from workforge.persistence.base import dump_definition
from workforge.persistence.file_store import atomic_write

_log = logging.getLogger(__name__)

_VERSION_FILE = re.compile(r"^v(\d+)\.ya?ml$")


class DefinitionStore(ABC):
    """Published definitions are immutable; a new version is a new record."""

    def __init__(self, audit: AuditLog | None = None):
        self.audit = audit

    @abstractmethod
    async def versions(self, workflow_id: str) -> list[int]:
        ...

    @abstractmethod
    async def _read(self, workflow_id: str, version: int) -> WorkflowDefinition:
        ...

    @abstractmethod
    async def _write(self, definition: WorkflowDefinition) -> None:
        ...

    @abstractmethod
    async def _remove(self, workflow_id: str) -> None:
        ...

    @abstractmethod
    async def workflow_ids(self) -> list[str]:
        ...

    async def get_definition(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        """Return ``version`` of the workflow, or the latest when omitted."""
        known = await self.versions(workflow_id)
        if not known:
            raise DefinitionError(f"Workflow '{workflow_id}' not found")
        if version is None:
            version = known[-1]
        elif version not in known:
            raise DefinitionError(
                f"Workflow '{workflow_id}' has no version {version}. Available: {known}"
            )
        return await self._read(workflow_id, version)

    async def publish(self, definition: WorkflowDefinition, user_id: str = "system") -> list[dict[str, Any]]:
        known = await self.versions(definition.id)
        previous = await self._read(definition.id, known[-1]) if known else None
        if previous is not None and definition.version <= previous.version:
            raise DefinitionError(
                f"Workflow '{definition.id}' version {definition.version} is not newer than "
                f"published version {previous.version}"
            )
        await self._write(definition)
        changes = diff_definitions(previous, definition)
        _log.info(
            "Published workflow %s v%d", definition.id, definition.version,
            extra={"workflow_id": definition.id, "changes": len(changes)},
        )
        if self.audit is not None:
            self.audit.record(
                "create" if previous is None else "edit",
                definition.id,
                user_id=user_id,
                workflow_version=definition.version,
                changes=changes,
            )
        return changes

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return [await self.get_definition(wid) for wid in await self.workflow_ids()]

    async def delete(self, workflow_id: str, user_id: str = "system") -> None:
        if not await self.versions(workflow_id):
            raise DefinitionError(f"Workflow '{workflow_id}' not found")
        await self._remove(workflow_id)
        if self.audit is not None:
            self.audit.record("delete", workflow_id, user_id=user_id)


class InMemoryDefinitionStore(DefinitionStore):

    def __init__(self, definitions: list[WorkflowDefinition] | None = None, audit: AuditLog | None = None):
        super().__init__(audit)
        self._definitions: dict[str, dict[int, WorkflowDefinition]] = {}
        for definition in definitions or []:
            self._definitions.setdefault(definition.id, {})[definition.version] = definition

    async def versions(self, workflow_id: str) -> list[int]:
        return sorted(self._definitions.get(workflow_id, {}))

    async def _read(self, workflow_id: str, version: int) -> WorkflowDefinition:
        return self._definitions[workflow_id][version]

    async def _write(self, definition: WorkflowDefinition) -> None:
        self._definitions.setdefault(definition.id, {})[definition.version] = definition

    async def _remove(self, workflow_id: str) -> None:
        self._definitions.pop(workflow_id, None)

    async def workflow_ids(self) -> list[str]:
        return sorted(self._definitions)


class FileDefinitionStore(DefinitionStore):
    """Definitions stored as ``<workflows_dir>/<id>/v<version>.yml``."""

    def __init__(
        self,
        workflows_dir: Union[str, Path] = ".workforge/workflows",
        limits: LimitsConfig | None = None,
        audit: AuditLog | None = None,
    ):
        super().__init__(audit)
        self.workflows_dir = Path(workflows_dir)
        self.loader = DefinitionLoader(limits)

    def _dir(self, workflow_id: str) -> Path:
        if not workflow_id or "/" in workflow_id or "\\" in workflow_id or ".." in workflow_id:
            raise DefinitionError(f"Invalid workflow id '{workflow_id}'")
        return self.workflows_dir / workflow_id

    def _scan(self, workflow_id: str) -> dict[int, Path]:
        directory = self._dir(workflow_id)
        found: dict[int, Path] = {}
        if directory.is_dir():
            for entry in directory.iterdir():
                match = _VERSION_FILE.match(entry.name)
                if match:
                    found[int(match.group(1))] = entry
        return found

    async def versions(self, workflow_id: str) -> list[int]:
        return sorted(await asyncio.to_thread(self._scan, workflow_id))

    async def _read(self, workflow_id: str, version: int) -> WorkflowDefinition:
        path = (await asyncio.to_thread(self._scan, workflow_id))[version]
        return await asyncio.to_thread(self.loader.load, path)

    async def _write(self, definition: WorkflowDefinition) -> None:
        path = self._dir(definition.id) / f"v{definition.version}.yml"
        if path.exists():
            raise DefinitionError(
                f"Workflow '{definition.id}' version {definition.version} is already published"
            )
        await asyncio.to_thread(atomic_write, path, dump_definition(definition))

    async def _remove(self, workflow_id: str) -> None:
        await asyncio.to_thread(shutil.rmtree, self._dir(workflow_id), True)

    async def workflow_ids(self) -> list[str]:
        if not self.workflows_dir.is_dir():
            return []
        return sorted(
            entry.name for entry in self.workflows_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )
