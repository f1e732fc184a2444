#!/usr/bin/env python3
"""Properties file dispatcher for host CI triggers.

Writes the parameters of the next build as ``KEY=VALUE`` lines; the host CI
system reads the file and schedules the build itself. Only usable for chained
mode, because the result of that build is reported by the next process.
"""

import logging
from pathlib import Path
from typing import Dict, Union

from cibisect.dispatch.base import BuildDispatcher, BuildHandle, BuildOutcome, DispatchError


logger = logging.getLogger(__name__)


class PropertiesFileDispatcher(BuildDispatcher):
    """Hand build parameters to the host CI through a properties file."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def dispatch(self, parameters: Dict[str, str]) -> BuildHandle:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"{key}={value}" for key, value in sorted(parameters.items())]
        self.path.write_text("\n".join(lines) + "\n")
        logger.info(f"Wrote next build parameters to {self.path}")
        return BuildHandle(dict(parameters), self.path)

    def wait(self, handle: BuildHandle) -> BuildOutcome:
        raise DispatchError(
            "Properties file dispatcher cannot wait for a build; "
            "use it with the chained 'step' command"
        )

    def describe(self) -> str:
        return f"properties file: {self.path}"
