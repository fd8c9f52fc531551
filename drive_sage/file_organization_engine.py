#!/usr/bin/env python3
"""Apply or preview file operations against a drive tree.

Operations are plain data (move / delete / rename) and run strictly in the
order given. Each one succeeds or fails on its own; nothing is rolled back.
A dry run reports every operation without touching the filesystem.

Callers must not run two executors over overlapping paths at the same time.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, ClassVar, Mapping, Sequence, Union

from drive_sage.drive_analysis_engine import (
    APP_NAME,
    AnalysisReport,
    DriveSageError,
    to_json_dict,
)

# ------------------------------- Constants ---------------------------------- #

DEFAULT_ORGANIZE_RULES: dict[str, set[str]] = {
    "Images": {"jpg", "jpeg", "png", "gif"},
    "Documents": {"pdf", "doc", "docx", "txt"},
    "Videos": {"mp4", "mov"},
    "Audio": {"mp3", "wav"},
}


# ------------------------------ Operations ---------------------------------- #


class UnsupportedOperationError(DriveSageError, ValueError):
    """An operation tag the executor does not know."""


@dataclasses.dataclass(frozen=True, slots=True)
class MoveOperation:
    type: ClassVar[str] = "move"
    source: str
    destination: str

    @property
    def target(self) -> str:
        return self.source


@dataclasses.dataclass(frozen=True, slots=True)
class DeleteOperation:
    type: ClassVar[str] = "delete"
    path: str

    @property
    def target(self) -> str:
        return self.path


@dataclasses.dataclass(frozen=True, slots=True)
class RenameOperation:
    type: ClassVar[str] = "rename"
    old_path: str
    new_path: str

    @property
    def target(self) -> str:
        return self.old_path


Operation = Union[MoveOperation, DeleteOperation, RenameOperation]

OPERATION_TYPES: dict[str, type] = {
    MoveOperation.type: MoveOperation,
    DeleteOperation.type: DeleteOperation,
    RenameOperation.type: RenameOperation,
}


def operation_from_dict(data: Mapping[str, Any]) -> Operation:
    """Build an Operation from its wire form, e.g. ``{"type": "delete", "path": ...}``."""
    op_type = str(data.get("type", ""))
    cls = OPERATION_TYPES.get(op_type)
    if cls is None:
        raise UnsupportedOperationError(f"Unsupported operation type: {op_type or '<missing>'}")
    fields = {f.name for f in dataclasses.fields(cls)}
    missing = sorted(f for f in fields if not data.get(f))
    if missing:
        raise ValueError(f"{op_type} operation missing field(s): {', '.join(missing)}")
    return cls(**{f: str(data[f]) for f in fields})


def operation_to_dict(operation: Operation) -> dict[str, Any]:
    data = dataclasses.asdict(operation)
    data["type"] = operation.type
    return data


def _describe(operation: Any) -> tuple[str, str]:
    """(type tag, primary path) for ledger entries, tolerant of malformed input."""
    if isinstance(operation, Mapping):
        op_type = str(operation.get("type", "<missing>"))
        path = operation.get("source") or operation.get("path") or operation.get("old_path") or ""
        return op_type, str(path)
    return getattr(operation, "type", type(operation).__name__), str(getattr(operation, "target", ""))


def _is_case_change(src: Path, dst: Path) -> bool:
    """True when ``dst`` is ``src`` re-cased on a case-insensitive filesystem."""
    return (
        src.name != dst.name
        and src.name.lower() == dst.name.lower()
        and os.path.samefile(src, dst)
    )


# -------------------------------- Results ----------------------------------- #


@dataclasses.dataclass(frozen=True, slots=True)
class OperationError:
    operation_type: str
    path: str
    message: str


@dataclasses.dataclass(frozen=True, slots=True)
class OperationSummary:
    total: int
    successful: int
    failed: int


@dataclasses.dataclass(frozen=True, slots=True)
class OperationResult:
    dry_run: bool
    moved: tuple[MoveOperation, ...]
    deleted: tuple[DeleteOperation, ...]
    renamed: tuple[RenameOperation, ...]
    errors: tuple[OperationError, ...]
    summary: OperationSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "moved": [{"source": m.source, "destination": m.destination} for m in self.moved],
            "deleted": [d.path for d in self.deleted],
            "renamed": [{"old_path": r.old_path, "new_path": r.new_path} for r in self.renamed],
            "errors": [to_json_dict(e) for e in self.errors],
            "summary": to_json_dict(self.summary),
        }


# ------------------------------- Executor ----------------------------------- #


class OperationExecutor:
    """Run operations in input order, isolating each failure."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(APP_NAME)

    def execute(
        self,
        operations: Sequence[Operation | Mapping[str, Any]],
        dry_run: bool = True,
    ) -> OperationResult:
        moved: list[MoveOperation] = []
        deleted: list[DeleteOperation] = []
        renamed: list[RenameOperation] = []
        errors: list[OperationError] = []
        successful = 0

        for raw in operations:
            try:
                operation = operation_from_dict(raw) if isinstance(raw, Mapping) else raw
                self._apply(operation, dry_run)
            except Exception as exc:  # pylint: disable=broad-except
                op_type, path = _describe(raw)
                errors.append(OperationError(operation_type=op_type, path=path, message=str(exc)))
                self.logger.error("operation_failed type=%s path=%s err=%s", op_type, path, exc)
                continue

            if isinstance(operation, MoveOperation):
                moved.append(operation)
            elif isinstance(operation, DeleteOperation):
                deleted.append(operation)
            else:
                renamed.append(operation)
            successful += 1

        return OperationResult(
            dry_run=dry_run,
            moved=tuple(moved),
            deleted=tuple(deleted),
            renamed=tuple(renamed),
            errors=tuple(errors),
            summary=OperationSummary(
                total=len(operations),
                successful=successful,
                failed=len(errors),
            ),
        )

    def _apply(self, operation: Operation, dry_run: bool) -> None:
        if isinstance(operation, MoveOperation):
            if not dry_run:
                self._move(operation.source, operation.destination)
            self.logger.info(
                "file_moved source=%s destination=%s dry_run=%s",
                operation.source, operation.destination, dry_run,
            )
        elif isinstance(operation, DeleteOperation):
            if not dry_run:
                self._delete(operation.path)
            self.logger.info("file_deleted path=%s dry_run=%s", operation.path, dry_run)
        elif isinstance(operation, RenameOperation):
            if not dry_run:
                self._move(operation.old_path, operation.new_path)
            self.logger.info(
                "file_renamed old=%s new=%s dry_run=%s",
                operation.old_path, operation.new_path, dry_run,
            )
        else:
            raise UnsupportedOperationError(f"Unsupported operation type: {_describe(operation)[0]}")

    @staticmethod
    def _move(source: str, destination: str) -> None:
        src = Path(source)
        dst = Path(destination)
        if not src.exists() and not src.is_symlink():
            raise FileNotFoundError(f"Source does not exist: {source}")
        if (dst.exists() or dst.is_symlink()) and not _is_case_change(src, dst):
            raise FileExistsError(f"Destination already exists: {destination}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dst))

    @staticmethod
    def _delete(path: str) -> None:
        p = Path(path)
        if p.is_symlink() or p.is_file():
            p.unlink()
        elif p.is_dir():
            shutil.rmtree(p)
        else:
            raise FileNotFoundError(f"Path does not exist: {path}")


# ------------------------------- Planner ------------------------------------ #


class OrganizationPlanner:
    """Turn an AnalysisReport into moves by file type plus system-file deletes."""

    def __init__(self, custom_rule_file: str | None = None):
        self.rules = {k: set(v) for k, v in DEFAULT_ORGANIZE_RULES.items()}
        if custom_rule_file:
            self._merge_custom_rules(custom_rule_file)

    def _merge_custom_rules(self, rule_file: str) -> None:
        path = Path(rule_file)
        if not path.exists():
            raise FileNotFoundError(f"Organize rule file not found: {rule_file}")
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("Organize rules must be a JSON object")
        for folder, exts in data.items():
            if not isinstance(exts, list):
                continue
            self.rules.setdefault(folder, set()).update(str(x).lower().lstrip(".") for x in exts)

    def destination_folder(self, file_name: str) -> str | None:
        if file_name.startswith(".") or "." not in file_name:
            return None
        ext = file_name.rsplit(".", 1)[1].lower()
        for folder, exts in self.rules.items():
            if ext in exts:
                return folder
        return None

    def plan(self, report: AnalysisReport) -> list[Operation]:
        operations: list[Operation] = []
        for folder in report.folders:
            for loose in folder.loose_files:
                target = self.destination_folder(loose.name)
                if target is None:
                    continue
                operations.append(
                    MoveOperation(
                        source=os.path.join(folder.path, loose.name),
                        destination=os.path.join(folder.path, target, loose.name),
                    )
                )
        for record in report.system_files:
            operations.append(DeleteOperation(path=record.path))
        return operations


# ----------------------- File Organization Service -------------------------- #


class FileOrganizationService:
    """Organize and delete-one-file requests, with start/complete logging."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(APP_NAME)
        self.executor = OperationExecutor(logger=self.logger)

    def organize(
        self,
        operations: Sequence[Operation | Mapping[str, Any]],
        dry_run: bool = True,
    ) -> OperationResult:
        self.logger.info("organize_start operations=%s dry_run=%s", len(operations), dry_run)
        result = self.executor.execute(operations, dry_run=dry_run)
        self.logger.info(
            "organize_complete total=%s successful=%s failed=%s",
            result.summary.total, result.summary.successful, result.summary.failed,
        )
        return result

    def delete_file(self, path: str) -> OperationResult:
        return self.organize([DeleteOperation(path=path)], dry_run=False)


def execute(
    operations: Sequence[Operation | Mapping[str, Any]],
    dry_run: bool = True,
) -> OperationResult:
    return FileOrganizationService().organize(operations, dry_run=dry_run)


__all__ = [
    "DEFAULT_ORGANIZE_RULES",
    "DeleteOperation",
    "FileOrganizationService",
    "MoveOperation",
    "Operation",
    "OperationError",
    "OperationExecutor",
    "OperationResult",
    "OperationSummary",
    "OrganizationPlanner",
    "RenameOperation",
    "UnsupportedOperationError",
    "execute",
    "operation_from_dict",
    "operation_to_dict",
]
