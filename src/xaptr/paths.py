from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path

from .errors import ConfigurationError

RAW_RESULTS_FILE_NAME = "raw-results.json"
LOG_FILE_NAME = "xaptr.log"
REPORT_FILE_NAME = "report.md"
COMPARE_REPORT_FILE_NAME = "comparison.md"
COMPARE_RESULTS_RELATIVE_PATH = "compare-results"
DEFAULT_DATA_DIR_NAME = "perfdata"


def sanitize_label(label: str) -> str:
    """Make a label filesystem-safe and non-empty."""
    s = re.sub(r"[^A-Za-z0-9_.-]+", "-", label.strip()).strip("-")
    if not s:
        raise ValueError(f"label {label!r} has no usable characters")
    return s


def locate_project(candidates: list[str], *, cwd: Path) -> Path:
    """Resolve the project file from the CLI positionals.

    Accepts a path to a `.csproj`, a directory containing exactly one, or
    nothing (the current directory is searched).
    """
    if len(candidates) > 1:
        raise ConfigurationError(f"Only one project may be given, got {len(candidates)}: {candidates}")
    target = (cwd / candidates[0]).resolve() if candidates else cwd.resolve()

    if target.is_file():
        if target.suffix != ".csproj":
            raise ConfigurationError(f"Not a project file: {target}")
        return target
    if not target.is_dir():
        raise ConfigurationError(f"Project path does not exist: {target}")

    found = sorted(target.glob("*.csproj"))
    if not found:
        raise ConfigurationError(f"No project file found in {target}")
    if len(found) > 1:
        names = ", ".join(p.name for p in found)
        raise ConfigurationError(f"Multiple project files found in {target} ({names}); pass one explicitly")
    return found[0]


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def detect_package_name(project_path: Path) -> str | None:
    """Best-effort Android package name: `<ApplicationId>` first, then the manifest's `package`."""
    try:
        root = ET.parse(project_path).getroot()
    except (ET.ParseError, OSError):
        root = None
    if root is not None:
        for el in root.iter():
            if _local_name(el.tag) == "ApplicationId" and el.text and el.text.strip():
                return el.text.strip()

    project_dir = project_path.parent
    for manifest in (project_dir / "AndroidManifest.xml", project_dir / "Properties" / "AndroidManifest.xml"):
        if not manifest.is_file():
            continue
        try:
            package = ET.parse(manifest).getroot().get("package")
        except ET.ParseError:
            continue
        if package:
            return package
    return None


def default_output_base(project_path: Path) -> Path:
    return project_path.parent / DEFAULT_DATA_DIR_NAME


def new_data_dir(*, base: Path, configuration: str, now: datetime) -> Path:
    """Per-invocation data directory, e.g. `perfdata/20260101-120000-Release`."""
    return (base / f"{now.strftime('%Y%m%d-%H%M%S')}-{sanitize_label(configuration)}").resolve()


def run_dir(data_dir: Path, run_index: int) -> Path:
    return data_dir / "runs" / f"run-{run_index:03d}"


def raw_results_path(data_dir: Path) -> Path:
    return data_dir / RAW_RESULTS_FILE_NAME


def find_signed_apk(project_path: Path, configuration: str) -> Path | None:
    """Newest signed APK produced for `configuration` under the project's `bin/`.

    Incremental builds leave the APK untouched, so its age is not checked.
    """
    bin_dir = project_path.parent / "bin" / configuration
    if not bin_dir.is_dir():
        return None
    apks = sorted(bin_dir.rglob("*-Signed.apk"), key=lambda p: p.stat().st_mtime, reverse=True)
    return apks[0] if apks else None
