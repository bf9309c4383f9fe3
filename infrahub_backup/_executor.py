"""Local process execution for the docker and kubectl CLIs."""

import asyncio
import os
from typing import Dict, Optional

from ._utils import logger
from .exceptions import CommandError, PrerequisiteError


class CommandExecutor:
    """Run external commands on the operator host."""

    async def _spawn(self, name: str, args, env: Optional[Dict[str, str]], merge_stderr: bool):
        process_env = None
        if env:
            process_env = {**os.environ, **env}
        try:
            return await asyncio.create_subprocess_exec(
                name,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
                env=process_env,
            )
        except FileNotFoundError as err:
            raise PrerequisiteError(f"{name} CLI not found on PATH") from err

    async def run_command(self, name: str, *args: str, env: Optional[Dict[str, str]] = None) -> str:
        """Run a command and return its standard output.

        Raises:
            CommandError: If the command exits non-zero (output includes stderr)
            PrerequisiteError: If the executable does not exist
        """
        logger.debug(f"Running: {name} {' '.join(args)}")
        process = await self._spawn(name, args, env, merge_stderr=False)
        stdout, stderr = await process.communicate()
        output = stdout.decode("utf-8", errors="replace")
        if process.returncode != 0:
            errors = stderr.decode("utf-8", errors="replace")
            raise CommandError([name, *args], process.returncode, output + errors)
        return output

    async def run_command_quiet(self, name: str, *args: str) -> None:
        await self.run_command(name, *args)

    async def run_command_with_stream(self, name: str, *args: str, env: Optional[Dict[str, str]] = None) -> str:
        """Run a command, logging each output line as it is produced.

        Returns:
            The collected output (stdout and stderr interleaved)
        """
        logger.debug(f"Streaming: {name} {' '.join(args)}")
        process = await self._spawn(name, args, env, merge_stderr=True)
        lines = []
        while True:
            raw = await process.stdout.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\n")
            lines.append(line)
            logger.info(line)
        await process.wait()
        output = "\n".join(lines)
        if process.returncode != 0:
            raise CommandError([name, *args], process.returncode, output)
        return output
