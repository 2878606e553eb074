"""Inspection of a project's directory: effective root, run command, file listing."""

import json
from pathlib import Path

PROJECT_MARKERS = ("package.json", "manage.py")
SKIP_ROOT_DIRS = {"node_modules"}
SKIP_LIST_DIRS = {"node_modules", ".git", ".next", "dist", "build", "__pycache__", ".venv", "venv"}
DEFAULT_SERVE_COMMAND = "npm start"


def _has_marker(directory: Path) -> bool:
    return any((directory / marker).exists() for marker in PROJECT_MARKERS)


def find_project_root(directory: str | Path) -> Path:
    """Locate the directory to serve from.

    Agents often scaffold into a named subfolder, so when the project
    directory has no marker file the first visible subdirectory that does is
    used instead.
    """
    directory = Path(directory)
    if _has_marker(directory):
        return directory
    try:
        entries = sorted(directory.iterdir())
    except OSError:
        return directory
    for entry in entries:
        if entry.name.startswith(".") or entry.name in SKIP_ROOT_DIRS:
            continue
        try:
            if entry.is_dir() and _has_marker(entry):
                return entry
        except OSError:
            continue
    return directory


def detect_serve_command(directory: str | Path, bind_all: bool = False) -> str:
    """Pick a dev-server command from the marker files in directory."""
    directory = Path(directory)
    pkg_path = directory / "package.json"
    if pkg_path.exists():
        try:
            pkg = json.loads(pkg_path.read_text())
        except (OSError, ValueError):
            pkg = None
        if isinstance(pkg, dict):
            deps = {**(pkg.get("dependencies") or {}), **(pkg.get("devDependencies") or {})}
            host_flag = " --hostname 0.0.0.0" if bind_all and "next" in deps else ""
            scripts = pkg.get("scripts") or {}
            if "dev" in scripts:
                return f"npm run dev{host_flag}"
            if "start" in scripts:
                return f"npm start{host_flag}"
            if "serve" in scripts:
                return f"npm run serve{host_flag}"
    if (directory / "manage.py").exists():
        return "python manage.py runserver 0.0.0.0" if bind_all else "python manage.py runserver"
    if (directory / "app.py").exists():
        return "python app.py --host 0.0.0.0" if bind_all else "python app.py"
    return DEFAULT_SERVE_COMMAND


def list_files(directory: str | Path) -> list[str]:
    """Recursively list paths relative to directory, skipping dependency and build dirs.

    Directories appear with a trailing slash, immediately followed by their contents.
    """
    root = Path(directory)
    if not root.is_dir():
        return []
    results: list[str] = []
    _walk(root, root, results)
    return results


def _walk(current: Path, root: Path, results: list[str]):
    try:
        entries = sorted(current.iterdir(), key=lambda p: p.name)
    except OSError:
        return
    for entry in entries:
        if entry.name in SKIP_LIST_DIRS:
            continue
        relative = entry.relative_to(root).as_posix()
        try:
            is_dir = entry.is_dir() and not entry.is_symlink()
        except OSError:
            continue
        if is_dir:
            results.append(relative + "/")
            _walk(entry, root, results)
        else:
            results.append(relative)
