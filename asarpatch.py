#!/usr/bin/env python3
"""Apply literal text patches to files packed inside an Electron ``.asar`` archive.

Electron applications ship most of their JavaScript inside a single ``app.asar``
container.  This script unpacks such a container, rewrites individual files
using find/replace pairs taken from a JSON patch description and packs the
result back into place.  The untouched archive is preserved next to the new
one as ``app.asar.old``.

```
python asarpatch.py <app.asar> <patch.json>
```

The patch description looks like this:

```
{
  "version": "9.4.0",
  "patches": [
    {"file": "src/main.js", "find": "isLicensed()", "replace": "true"}
  ]
}
```

``version`` must match the ``version`` field of ``package.json`` stored inside
the archive, otherwise nothing is modified.  Patches are applied in order and
only the first occurrence of every ``find`` string is replaced, so a later
patch can build on the result of an earlier one.

The archive is unpacked into an ``extracted`` directory next to it, patched,
renamed to ``app.asar.old`` and packed again from the patched files.  A failed
run leaves the ``extracted`` directory behind so the partially patched files
can be inspected.
"""

from __future__ import annotations

import argparse
import json
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Callable, Dict, Iterable, NamedTuple, Sequence

import asar

ARCHIVE_EXTENSION = ".asar"
PATCH_EXTENSION = ".json"
PACKAGE_METADATA = "package.json"
BACKUP_SUFFIX = ".old"
WORKSPACE_NAME = "extracted"

USAGE_TEXT = "asarpatch [app.asar] [patch.json]"

SUCCESS = "success"
INVALID_ARGUMENT = "invalid_argument"
MALFORMED_INPUT = "malformed_input"
MISSING_METADATA = "missing_metadata"
VERSION_MISMATCH = "version_mismatch"
PATCH_APPLICATION_FAILED = "patch_application_failed"


class StepResult(NamedTuple):
    """Outcome of a single step of the patch run."""

    status: str
    value: object = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


def _ok(value: object = None) -> StepResult:
    return StepResult(SUCCESS, value)


def _fail(status: str, message: str) -> StepResult:
    return StepResult(status, None, message)


class Reporter:
    """Write tagged, single line status messages to a sink (``print`` by default)."""

    USAGE = "USAGE"
    INFO = "INFO"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"

    def __init__(self, sink: Callable[[str], None] | None = None) -> None:
        self._sink = sink if sink is not None else print

    def log(self, kind: str, message: str) -> None:
        self._sink(f"[{kind}] {message}")

    def usage(self, message: str) -> None:
        self.log(self.USAGE, message)

    def info(self, message: str) -> None:
        self.log(self.INFO, message)

    def error(self, message: str) -> None:
        self.log(self.ERROR, message)

    def success(self, message: str) -> None:
        self.log(self.SUCCESS, message)


def is_file_type(path: Path, extension: str) -> bool:
    """Return True if ``path`` ends with ``extension`` (case-insensitive)."""

    return Path(path).suffix.lower() == extension


def check_arguments(archive_path: Path, patch_path: Path) -> StepResult:
    if not is_file_type(archive_path, ARCHIVE_EXTENSION):
        return _fail(INVALID_ARGUMENT, f"The first argument must be an {ARCHIVE_EXTENSION} file.")
    if not is_file_type(patch_path, PATCH_EXTENSION):
        return _fail(INVALID_ARGUMENT, f"The second argument must be a {PATCH_EXTENSION} file.")
    return _ok()


def load_json_file(path: Path) -> object | None:
    """Return the parsed JSON stored at ``path`` or ``None`` if it is missing or invalid."""

    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


def _validate_patch_data(patch_data: object) -> StepResult:
    if not isinstance(patch_data, dict):
        return _fail(MALFORMED_INPUT, "Patch file must contain a JSON object.")

    patches = patch_data.get("patches")
    if not isinstance(patches, list):
        return _fail(MALFORMED_INPUT, "Patch file does not contain a list of patches.")

    for index, patch in enumerate(patches):
        if not isinstance(patch, dict) or not all(
            isinstance(patch.get(key), str) for key in ("file", "find", "replace")
        ):
            return _fail(
                MALFORMED_INPUT,
                f"Patch #{index + 1} must define string 'file', 'find' and 'replace' values.",
            )
    return _ok(patches)


def _read_text(path: Path) -> str:
    with path.open("r", encoding="utf-8", errors="replace", newline="") as handle:
        return handle.read()


def _write_text(path: Path, text: str) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(text)


def apply_patches(root: Path, patches: Sequence[Dict[str, str]]) -> StepResult:
    """Apply ``patches`` to files below ``root`` in order.

    Stops at the first patch whose file is missing or whose ``find`` text is
    absent.  Patches applied before the failure stay written to disk.
    """

    applied = 0
    for index, patch in enumerate(patches, start=1):
        relative = patch["file"]
        target = root / Path(*relative.replace("\\", "/").split("/"))
        if not target.is_file():
            return _fail(PATCH_APPLICATION_FAILED, f"patch #{index}: {relative} does not exist")

        text = _read_text(target)
        if patch["find"] not in text:
            return _fail(
                PATCH_APPLICATION_FAILED,
                f"patch #{index}: expected text not found in {relative}",
            )

        _write_text(target, text.replace(patch["find"], patch["replace"], 1))
        applied += 1

    return _ok(applied)


def workspace_for(archive_path: Path) -> Path:
    """Return the directory ``archive_path`` is unpacked into while patching."""

    return Path(archive_path).parent / WORKSPACE_NAME


def _extract_into(archive_path: Path, workspace: Path) -> None:
    """Unpack ``archive_path`` over the (possibly pre-existing) ``workspace``."""

    # asar.extract_archive refuses an existing destination, so unpack into a
    # fresh directory and merge it over the workspace.
    with tempfile.TemporaryDirectory(dir=workspace.parent) as staging_dir:
        staging = Path(staging_dir) / archive_path.stem
        asar.extract_archive(archive_path, staging)
        shutil.copytree(staging, workspace, symlinks=True, dirs_exist_ok=True)


def _backup_archive(archive_path: Path) -> Path:
    backup_path = archive_path.with_name(archive_path.name + BACKUP_SUFFIX)
    # os.rename silently replaces an existing target on POSIX.
    if backup_path.exists():
        raise FileExistsError(f"backup archive already exists: {backup_path}")
    archive_path.rename(backup_path)
    return backup_path


def run(archive_path: Path, patch_path: Path, reporter: Reporter | None = None) -> StepResult:
    """Extract ``archive_path``, apply ``patch_path`` and repack the archive in place."""

    reporter = reporter or Reporter()
    archive_path = Path(archive_path)
    patch_path = Path(patch_path)

    result = check_arguments(archive_path, patch_path)
    if not result.ok:
        reporter.error(result.message)
        return result

    workspace = workspace_for(archive_path)
    workspace.mkdir(exist_ok=True)

    reporter.info(f"Extracting {ARCHIVE_EXTENSION} file.")
    _extract_into(archive_path, workspace)

    package_path = workspace / PACKAGE_METADATA
    if not package_path.exists():
        result = _fail(MISSING_METADATA, f"{PACKAGE_METADATA} missing from extracted {archive_path.name}.")
        reporter.error(result.message)
        return result

    package_data = load_json_file(package_path)
    patch_data = load_json_file(patch_path)
    if not isinstance(package_data, dict) or patch_data is None:
        result = _fail(MALFORMED_INPUT, "Couldn't read package or patch data.")
        reporter.error(result.message)
        return result

    result = _validate_patch_data(patch_data)
    if not result.ok:
        reporter.error(result.message)
        return result
    patches = result.value

    if package_data.get("version") != patch_data.get("version"):
        result = _fail(
            VERSION_MISMATCH,
            f"Version mismatch between {archive_path.name} and patch file.",
        )
        reporter.error(result.message)
        return result

    reporter.info("Applying patches.")
    result = apply_patches(workspace, patches)
    if not result.ok:
        reporter.error(f"Failed to apply patches: {result.message}")
        return result

    _backup_archive(archive_path)
    asar.create_archive(workspace, archive_path)
    reporter.success(f"Applied {result.value} patches.")

    reporter.info("Cleaning up.")
    shutil.rmtree(workspace, ignore_errors=True)

    reporter.success("Done!")
    return result


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="asarpatch",
        description="Apply find/replace patches to files inside an Electron .asar archive",
    )
    parser.add_argument("archive", type=Path, help="path to the archive to patch (app.asar)")
    parser.add_argument("patch", type=Path, help="JSON file describing the version and patches to apply")
    return parser


def main(argv: Iterable[str] | None = None, reporter: Reporter | None = None) -> None:
    arguments = list(sys.argv[1:] if argv is None else argv)
    reporter = reporter or Reporter()
    parser = build_cli()

    if "-h" in arguments or "--help" in arguments:
        parser.print_help()
        return
    if len(arguments) != 2:
        reporter.usage(USAGE_TEXT)
        return

    # "--" keeps paths such as "-app.asar" from being read as options.
    args = parser.parse_args(["--", *arguments])
    run(args.archive, args.patch, reporter)


if __name__ == "__main__":
    main()
