"""Azure CLI shell-out helper.

Only two things go through the `az` binary: RBAC role assignments on the
Foundry resource and discovering the signed-in user's object id.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Timeout constants (seconds)
COMMAND_TIMEOUT_SECONDS = 120

ROLE_EXISTS_MARKERS = ("already exists", "roleassignmentexists")


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one `az` invocation."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class AzureCli:
    """Runs `az` commands without a shell."""

    def __init__(self, executable: str = "az", timeout: float = COMMAND_TIMEOUT_SECONDS) -> None:
        self.executable = executable
        self.timeout = timeout

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    async def run(self, *args: str) -> CommandResult:
        """Run ``az <args>`` and capture its output.

        A missing binary or a timeout is reported as a failed result
        (exit code 127 / 124) rather than raised.
        """
        cmd = [self.executable, *args]
        logger.debug("Running Azure CLI", extra={"command": " ".join(cmd)})
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return CommandResult(127, "", f"Command not found: {self.executable}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            return CommandResult(124, "", f"Command timed out after {self.timeout}s: {' '.join(cmd)}")

        return CommandResult(
            exit_code=process.returncode if process.returncode is not None else 1,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )

    async def signed_in_user_id(self) -> str | None:
        """Object id of the account `az` is logged in as, if any."""
        result = await self.run("ad", "signed-in-user", "show", "--query", "id", "-o", "tsv")
        if not result.ok or not result.stdout:
            logger.debug("No signed-in Azure CLI user", extra={"stderr": result.stderr})
            return None
        return result.stdout.splitlines()[0].strip()

    async def assign_role(self, assignee: str, role: str, scope: str) -> bool:
        """Assign ``role`` at ``scope``; an existing assignment counts as success."""
        result = await self.run(
            "role", "assignment", "create",
            "--assignee", assignee,
            "--role", role,
            "--scope", scope,
        )
        if result.ok:
            return True
        if any(marker in result.stderr.lower() for marker in ROLE_EXISTS_MARKERS):
            logger.debug("Role already assigned", extra={"role": role})
            return True
        logger.warning(
            "Role assignment failed",
            extra={"role": role, "exit_code": result.exit_code, "stderr": result.stderr[:500]},
        )
        return False
