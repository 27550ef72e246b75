"""Temporary file handling for report output.

Serialized reports are staged on local disk before they are uploaded and
the staged files are removed afterwards, whether the upload worked or not.
"""

import logging
import os
import pathlib
import tempfile

logger = logging.getLogger(__name__)


def delete_files(file_paths: list[pathlib.Path]) -> None:
    """Delete files from the provided paths.

    Args:
        file_paths: List of paths to the files to be deleted.
    """
    for file_path in file_paths:
        logger.debug("Removing '%s'", file_path)
        try:
            file_path.unlink()
        except FileNotFoundError:
            logger.debug("File '%s' already deleted or does not exist", file_path)
        except OSError as e:
            logger.error("Failed to remove '%s': %s", file_path, e)


def write_temp_file(content: str, suffix: str, directory: pathlib.Path | None = None) -> pathlib.Path:
    """Write text content to a new temporary file.

    Args:
        content: Text to write, encoded as UTF-8.
        suffix: File suffix including the dot, e.g. ``.csv``.
        directory: Where to create the file, system temp dir by default.

    Returns:
        Path of the written file. The caller owns and must delete it.
    """
    fd, name = tempfile.mkstemp(suffix=suffix, dir=directory)
    path = pathlib.Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
    except OSError:
        delete_files([path])
        raise
    logger.debug("Staged %d characters in '%s'", len(content), path)
    return path


def file_age_seconds(path: pathlib.Path, now: float) -> float | None:
    """Return how old a file is, or None when it does not exist."""
    try:
        return now - path.stat().st_mtime
    except FileNotFoundError:
        return None
