#!/usr/bin/env python3
"""Session Store - Durable storage of bisection decision logs.

One canonical log file per search identifier, shared by every process taking
part in the same search. Each process works on a private scratch copy and
publishes it back after every recorded decision.

There is no lock around publishing: two processes saving the same search at
the same time will overwrite each other.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union


logger = logging.getLogger(__name__)

# Constants
LOG_SUFFIX = ".log"
SCRATCH_PREFIX = "cibisect_"


class SessionStoreError(Exception):
    """Raised for invalid identifiers or unusable storage locations."""


@dataclass
class SessionHandle:
    """Open session of one process.

    Attributes:
        search_identifier: Stable identifier of the search
        canonical_path: Shared log location
        local_path: Process-private scratch copy
    """

    search_identifier: str
    canonical_path: Path
    local_path: Path


class SessionStore:
    """File-based store for bisection decision logs.

    Attributes:
        state_dir: Directory holding the canonical logs
        scratch_dir: Directory for scratch copies (system temp dir if None)
    """

    def __init__(
        self, state_dir: Union[str, Path], scratch_dir: Optional[Union[str, Path]] = None
    ) -> None:
        """Initialize session store.

        Args:
            state_dir: Directory holding the canonical logs
            scratch_dir: Directory for scratch copies
        """
        self.state_dir = Path(state_dir)
        self.scratch_dir = Path(scratch_dir) if scratch_dir else None

        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            if self.scratch_dir:
                self.scratch_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SessionStoreError(f"Cannot create state directory {self.state_dir}: {exc}") from exc

    def canonical_path(self, search_identifier: str) -> Path:
        """Return the canonical log path for an identifier.

        Raises:
            SessionStoreError: If the identifier cannot be used as a file name
        """
        if (
            not search_identifier
            or search_identifier.startswith(".")
            or "/" in search_identifier
            or "\\" in search_identifier
            or os.sep in search_identifier
        ):
            raise SessionStoreError(f"Invalid search identifier: {search_identifier!r}")
        return self.state_dir / f"{search_identifier}{LOG_SUFFIX}"

    def open(self, search_identifier: str) -> SessionHandle:
        """Open a session and seed its scratch copy.

        Args:
            search_identifier: Stable identifier of the search

        Returns:
            SessionHandle with a writable scratch copy
        """
        canonical = self.canonical_path(search_identifier)
        fd, local = tempfile.mkstemp(
            prefix=f"{SCRATCH_PREFIX}{search_identifier}_",
            suffix=LOG_SUFFIX,
            dir=str(self.scratch_dir) if self.scratch_dir else None,
        )
        os.close(fd)
        local_path = Path(local)
        logger.debug(f"Local file to be used: {local_path}")

        if canonical.exists():
            logger.info(f"Copying latest decision log from {canonical}")
            shutil.copyfile(canonical, local_path)
        else:
            logger.info(
                f"No previous decision log for '{search_identifier}', "
                f"bisection will start from scratch"
            )

        return SessionHandle(search_identifier, canonical, local_path)

    def has_prior_progress(self, handle: SessionHandle) -> bool:
        """True iff the canonical copy exists and is non-empty."""
        canonical = handle.canonical_path
        return canonical.exists() and canonical.stat().st_size > 0

    def read(self, handle: SessionHandle) -> str:
        """Read the scratch copy."""
        return handle.local_path.read_text()

    def save(self, handle: SessionHandle, log_text: str) -> None:
        """Overwrite the scratch copy and publish it as the canonical copy.

        Args:
            handle: Open session
            log_text: Full decision log
        """
        handle.local_path.write_text(log_text)

        canonical = handle.canonical_path
        staging = canonical.with_name(f".{canonical.name}.{os.getpid()}.tmp")
        try:
            shutil.copyfile(handle.local_path, staging)
            os.replace(staging, canonical)
        except OSError as exc:
            msg = f"Failed to publish decision log to {canonical}: {exc}"
            logger.error(msg)
            raise SessionStoreError(msg) from exc
        finally:
            if staging.exists():
                staging.unlink()

        logger.debug(f"Published decision log to {canonical}")

    def cleanup(self, handle: SessionHandle) -> None:
        """Remove the scratch copy. The canonical copy is never touched."""
        try:
            handle.local_path.unlink()
        except FileNotFoundError:
            pass

    def canonical_log(self, search_identifier: str) -> Optional[str]:
        """Read the canonical log of a search, None if it was never saved."""
        canonical = self.canonical_path(search_identifier)
        if not canonical.exists():
            return None
        return canonical.read_text()
