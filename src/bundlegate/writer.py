from __future__ import annotations

import fcntl
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Iterator, Mapping

from .errors import ArtifactWriteRefused
from .gate import Gate

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_output(output: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``<output>.lock`` sidecar.

    The sidecar lives beside the output directory so the directory itself can
    be renamed while the lock is held.
    """
    lock_path = output.with_name(output.name + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _write_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="\n") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())


def _checked_relative(relative: str) -> PurePosixPath:
    path = PurePosixPath(relative)
    if path.is_absolute() or ".." in path.parts or not path.parts:
        raise ValueError(f"artifact path escapes the output root: {relative!r}")
    return path


class ArtifactWriter:
    """Publishes a rendered output tree in one step.

    The tree is staged in a temporary directory next to ``output_root``.
    Only the top-level entries it contains (``BUNDLE_SERIES`` and
    ``BUNDLES``) are swapped into place by rename; anything else under
    ``output_root`` is left alone. On any failure the stage is discarded and
    every swapped entry is restored from its backup.
    """

    def __init__(self, output_root: Path, gate: Gate) -> None:
        self.output_root = Path(output_root)
        self.gate = gate

    def write(self, files: Mapping[str, str]) -> Path:
        if not self.gate.writes_permitted:
            raise ArtifactWriteRefused(
                f"writes are only permitted on entry to Finalized (gate is {self.gate.phase.value})",
                details={"phase": self.gate.phase.value},
            )
        relative_paths = {relative: _checked_relative(relative) for relative in files}
        entries = list(dict.fromkeys(path.parts[0] for path in relative_paths.values()))

        output = self.output_root
        output.parent.mkdir(parents=True, exist_ok=True)
        stage = Path(tempfile.mkdtemp(dir=str(output.parent), prefix=f".{output.name}.stage-"))
        try:
            for relative, content in files.items():
                _write_file(stage.joinpath(*relative_paths[relative].parts), content)
            with _locked_output(output):
                self._publish(stage, output, entries)
        finally:
            shutil.rmtree(stage, ignore_errors=True)
        logger.info("Published %d artifact(s) under %s to %s", len(files), ", ".join(entries), output)
        return output

    @staticmethod
    def _publish(stage: Path, output: Path, entries: list[str]) -> None:
        output.mkdir(parents=True, exist_ok=True)
        backup = Path(tempfile.mkdtemp(dir=str(output.parent), prefix=f".{output.name}.previous-"))
        moved: list[str] = []
        placed: list[str] = []
        try:
            for name in entries:
                target = output / name
                if target.exists() or target.is_symlink():
                    os.replace(target, backup / name)
                    moved.append(name)
                os.replace(stage / name, target)
                placed.append(name)
        except BaseException:
            for name in reversed(placed):
                _remove(output / name)
            for name in reversed(moved):
                os.replace(backup / name, output / name)
            logger.warning("Publishing to %s failed; restored %d previous entr(ies)", output, len(moved))
            shutil.rmtree(backup, ignore_errors=True)
            raise
        shutil.rmtree(backup, ignore_errors=True)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()
