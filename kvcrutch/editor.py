"""
Editor launch for ``kvcrutch config edit``.

Resolves which editor to run and opens the configuration file in it,
blocking until the editor exits.
"""

import os
import shutil
import subprocess
import sys
from typing import Optional

from .logger import StructuredLogger


class EditorError(Exception):
    """Raised when the editor cannot be found or exits with an error."""
    pass


def default_editor(platform: Optional[str] = None) -> str:
    """
    Return the platform's default way of opening a file.

    Args:
        platform: sys.platform value (defaults to the running platform)

    Returns:
        Editor command name
    """
    platform = platform or sys.platform
    if platform.startswith("win"):
        return "notepad"
    if platform == "darwin":
        return "open"
    if platform.startswith("linux"):
        return "xdg-open"
    return "vim"


def resolve_editor(editor: Optional[str] = None) -> str:
    """
    Pick an editor and find its executable.

    Priority (highest to lowest):
    1. editor argument (the --editor flag)
    2. EDITOR environment variable
    3. Platform default

    Args:
        editor: Editor requested on the command line

    Returns:
        Full path to the editor executable

    Raises:
        EditorError: If the editor is not on PATH
    """
    editor = editor or os.environ.get("EDITOR") or default_editor()

    executable = shutil.which(editor)
    if not executable:
        raise EditorError(f"Editor not found: {editor}. Pass --editor or set $EDITOR")
    return executable


def open_in_editor(
    path: str,
    logger: StructuredLogger,
    editor: Optional[str] = None,
) -> None:
    """
    Open a file in an editor and wait for it to exit.

    The editor inherits the terminal (stdin, stdout, stderr).

    Args:
        path: File to edit
        logger: Logger for progress and errors
        editor: Editor requested on the command line

    Raises:
        EditorError: If the editor is missing or exits non-zero
    """
    executable = resolve_editor(editor)

    logger.infow("Opening config", editor=executable, config_path=path)

    try:
        result = subprocess.run([executable, path])
    except OSError as e:
        raise EditorError(f"Failed to start editor {executable}: {e}") from e

    if result.returncode != 0:
        raise EditorError(
            f"Editor {executable} exited with status {result.returncode}"
        )
