"""
Shared dependencies and helpers for the API routers.

The database, job queue and import processor are built once in
``app.main.create_app`` and kept on ``app.state``; these functions hand them
to route handlers so tests can swap them through ``dependency_overrides``.
"""
from fastapi import HTTPException, Request

from app.core.config import Settings
from app.db.models import ImportKind
from app.db.session import get_database, get_db  # noqa: F401
from app.domain.imports.orchestrator import ImportProcessor
from app.domain.imports.processors.file_parser import UnsupportedFileTypeError
from app.domain.imports.processors.file_parser import detect_file_type as _detect_file_type
from app.domain.imports.queue import JobQueue


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_import_queue(request: Request) -> JobQueue:
    return request.app.state.import_queue


def get_import_processor(request: Request) -> ImportProcessor:
    return request.app.state.import_processor


def resolve_import_kind(kind: str) -> ImportKind:
    """
    Map the ``{kind}`` path segment to an import kind.

    Raises:
        HTTPException: 404 for an unknown kind
    """
    try:
        return ImportKind(kind.lower())
    except ValueError:
        allowed = ", ".join(member.value for member in ImportKind)
        raise HTTPException(status_code=404, detail=f"Unknown import type '{kind}'. Expected one of: {allowed}")


def detect_file_type(filename: str) -> str:
    """
    Detect file type from filename extension.

    Returns:
        'csv' or 'xlsx'

    Raises:
        HTTPException: 400 if the file type is not supported
    """
    try:
        return _detect_file_type(filename)
    except UnsupportedFileTypeError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
