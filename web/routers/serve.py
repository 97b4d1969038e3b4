"""Static build artifact serving.

- GET /builds/{id}/ - Entry document of a build
- GET /builds/{id}/{path} - Any served file of a build

Every response carries the security headers derived from the build's
manifest and permission flags. A build id that could escape the
artifacts root is rejected with 400 before touching the filesystem.
"""

from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as http_status
from fastapi.responses import FileResponse

from bundlepipe.builds.artifacts import (
    ENTRY_HTML,
    SOURCE_DIR,
    InvalidBuildIdError,
    get_build_dir,
)
from bundlepipe.config import Settings
from bundlepipe.policy.headers import derive_headers
from web.deps import get_app_settings, http_error

router = APIRouter()


def _not_found(file_path: str) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={"code": "not_found", "message": f"File not found: {file_path}"},
    )


def _resolve_file(build_dir: Path, file_path: str) -> Path:
    parts = [p for p in file_path.split("/") if p]
    if any(p == ".." or p.startswith(".") for p in parts) or (parts and parts[0] == SOURCE_DIR):
        raise _not_found(file_path)
    target = (build_dir.joinpath(*parts) if parts else build_dir).resolve()
    root = build_dir.resolve()
    if target != root and root not in target.parents:
        raise _not_found(file_path)
    if target.is_dir():
        target = target / ENTRY_HTML
    if not target.is_file():
        raise _not_found(file_path)
    return target


def _serve(build_id: str, file_path: str, settings: Settings) -> FileResponse:
    try:
        build_dir = get_build_dir(build_id, settings)
        policy = derive_headers(build_id, settings)
    except InvalidBuildIdError as e:
        raise http_error(http_status.HTTP_400_BAD_REQUEST, e) from None

    target = _resolve_file(build_dir, file_path)
    return FileResponse(target, headers=policy.to_headers())


@router.get("/{build_id}/")
def serve_entry(build_id: str, settings: Settings = Depends(get_app_settings)) -> FileResponse:
    """Serve the entry document of a build."""
    return _serve(build_id, ENTRY_HTML, settings)


@router.get("/{build_id}/{file_path:path}")
def serve_file(
    build_id: str,
    file_path: str,
    settings: Settings = Depends(get_app_settings),
) -> FileResponse:
    """Serve one file of a build."""
    return _serve(build_id, file_path, settings)
