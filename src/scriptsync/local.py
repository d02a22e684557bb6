"""Mirror a project snapshot to a local folder and read it back.

On-disk layout:
    <folder>/
        project.json        # scriptId, title, createTime, updateTime
        appsscript.json     # JSON (manifest)
        Code.gs             # SERVER_JS files
        Sidebar.html        # HTML files
"""

from __future__ import annotations

import json
from pathlib import Path

from scriptsync.transport import FileKind, ProjectFile, ProjectSnapshot

# Maps Apps Script file types to local file extensions
FILE_KIND_TO_EXT: dict[FileKind, str] = {
    FileKind.SERVER_JS: ".gs",
    FileKind.HTML: ".html",
    FileKind.JSON: ".json",
}

# Reverse mapping: extension to Apps Script file type
EXT_TO_FILE_KIND: dict[str, FileKind] = {
    ext: kind for kind, ext in FILE_KIND_TO_EXT.items()
}

PROJECT_JSON = "project.json"


def write_snapshot(snapshot: ProjectSnapshot, folder: str | Path) -> list[Path]:
    """Write every project file plus project.json into folder.

    Returns:
        List of paths to written files.
    """
    folder = Path(folder)
    folder.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    meta = {
        "scriptId": snapshot.project_id,
        "title": snapshot.title,
        "createTime": snapshot.created_at,
        "updateTime": snapshot.updated_at,
    }
    project_json = folder / PROJECT_JSON
    project_json.write_text(json.dumps(meta, indent=2) + "\n")
    written.append(project_json)

    for pf in snapshot.files:
        path = folder / (pf.name + FILE_KIND_TO_EXT[pf.kind])
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(pf.source)
        written.append(path)
    return written


def read_script_id(folder: str | Path) -> str:
    """Read scriptId from project.json."""
    project_json = Path(folder) / PROJECT_JSON
    if not project_json.exists():
        raise FileNotFoundError(
            f"{PROJECT_JSON} not found in {folder}. Is this a pulled project folder?"
        )
    data = json.loads(project_json.read_text())
    script_id: str = data.get("scriptId", "")
    if not script_id:
        raise ValueError(f"scriptId missing from {project_json}")
    return script_id


def read_project_files(folder: str | Path) -> list[ProjectFile]:
    """Read script files from folder, sorted by relative path.

    Subdirectories map to Apps Script's slash-separated file names.
    Hidden entries and project.json are skipped.
    """
    folder = Path(folder)
    files: list[ProjectFile] = []
    for path in sorted(folder.rglob("*")):
        rel = path.relative_to(folder)
        if any(part.startswith(".") for part in rel.parts):
            continue
        if not path.is_file() or rel.as_posix() == PROJECT_JSON:
            continue
        kind = EXT_TO_FILE_KIND.get(path.suffix)
        if kind is None:
            continue
        name = rel.with_suffix("").as_posix()
        files.append(ProjectFile(name=name, kind=kind, source=path.read_text()))
    return files
