"""
Pre-update check script runner.

A container opts in with the dockpilot.pre-update-check label pointing at
an executable. The script gets the container name as its first argument
and in CONTAINER_NAME; exit code 0 allows the operation, anything else
blocks it.
"""

import asyncio
import logging
import os
import subprocess
from typing import Optional

from updates.types import PreCheckResult

logger = logging.getLogger(__name__)

# Characters that never appear in a legitimate script path
_FORBIDDEN_PATH_CHARS = (';', '&', '|', '`', '$', '\n')

MAX_OUTPUT_CHARS = 4000


def resolve_script_path(script_path: str, scripts_dir: str) -> str:
    """Relative script paths resolve against the scripts directory"""
    if os.path.isabs(script_path):
        return script_path
    return os.path.join(scripts_dir, script_path)


def is_valid_script_path(script_path: str) -> bool:
    if not script_path or not os.path.isabs(script_path):
        return False
    return not any(c in script_path for c in _FORBIDDEN_PATH_CHARS)


class PreUpdateCheckRunner:
    """Runs pre-update check scripts in a worker thread."""

    def __init__(self, scripts_dir: Optional[str] = None, timeout: Optional[int] = None):
        if scripts_dir is None or timeout is None:
            from config.settings import AppConfig
            scripts_dir = scripts_dir if scripts_dir is not None else AppConfig.SCRIPTS_DIR
            timeout = timeout if timeout is not None else AppConfig.PRE_CHECK_TIMEOUT
        self.scripts_dir = scripts_dir
        self.timeout = timeout

    async def run(self, script_path: str, container_name: str) -> PreCheckResult:
        """
        Run a check script for a container.

        Never raises for script problems: a missing, invalid or timed-out
        script is reported as not passed with exit_code None.

        Returns:
            PreCheckResult with combined stdout/stderr as output
        """
        resolved = resolve_script_path(script_path, self.scripts_dir)

        if not is_valid_script_path(resolved):
            logger.warning(f"Rejected pre-update script path for {container_name}: {script_path!r}")
            return PreCheckResult(passed=False, output=f"Invalid pre-update script path: {script_path}")

        if not os.path.isfile(resolved):
            logger.warning(f"Pre-update script not found for {container_name}: {resolved}")
            return PreCheckResult(passed=False, output=f"Script not found: {resolved}")

        env = {**os.environ, 'CONTAINER_NAME': container_name}

        logger.info(f"Running pre-update check {resolved} for {container_name}")
        try:
            completed = await asyncio.to_thread(
                subprocess.run,
                [resolved, container_name],
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Pre-update check for {container_name} timed out after {self.timeout}s")
            return PreCheckResult(passed=False, output=f"Script timed out after {self.timeout}s")
        except OSError as e:
            # Not executable, bad interpreter line, etc.
            logger.warning(f"Pre-update check for {container_name} could not run: {e}")
            return PreCheckResult(passed=False, output=f"Script error: {e}")

        output = (completed.stdout or "").strip()[-MAX_OUTPUT_CHARS:]
        if completed.returncode != 0:
            logger.info(f"Pre-update check for {container_name} failed with exit code {completed.returncode}")
            return PreCheckResult(passed=False, exit_code=completed.returncode, output=output)

        logger.info(f"Pre-update check for {container_name} passed")
        return PreCheckResult(passed=True, exit_code=0, output=output)
