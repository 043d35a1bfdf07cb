import asyncio
import os
from pathlib import Path
from shutil import which

from lumi.tester.errors import BridgeError
from lumi.tester.utils.logger import get_logger

logger = get_logger(__name__)


def resolve_binary(name: str, override: str | None = None, candidates: list[str] | None = None) -> str:
    """Resolve an external CLI: explicit override, then PATH, then conventional locations."""
    if override:
        if Path(override).exists():
            return override
        logger.warning(f"Configured path for {name} does not exist: {override}")

    found = which(name)
    if found:
        return found

    for candidate in candidates or []:
        path = Path(os.path.expanduser(candidate))
        if path.exists():
            return str(path)

    raise BridgeError(f"'{name}' not found. Install it or set its path in the environment.")


async def run_command(
    args: list[str],
    check: bool = True,
    timeout: float | None = None,
    stdin: bytes | None = None,
) -> bytes:
    """Run a command and return its stdout as bytes.

    Raises:
        BridgeError: if the process exits nonzero (when `check`) or cannot be started.
    """
    logger.debug(f"$ {' '.join(args)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise BridgeError(f"Failed to execute {args[0]}: {e}", command=args) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(input=stdin), timeout=timeout)
    except TimeoutError as e:
        process.kill()
        await process.wait()
        raise BridgeError(f"Command timed out: {' '.join(args)}", command=args) from e

    if check and process.returncode != 0:
        err = stderr.decode(errors="replace").strip()
        raise BridgeError(f"{Path(args[0]).name} command failed: {err}", command=args, stderr=err)
    return stdout


async def run_text(args: list[str], check: bool = True, timeout: float | None = None) -> str:
    output = await run_command(args, check=check, timeout=timeout)
    return output.decode(errors="replace")


async def run_shell_command_on_host(command: str, check: bool = True) -> tuple[int, str, str]:
    """Run a command line through `sh -c` and return (returncode, stdout, stderr)."""
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    if check and process.returncode != 0:
        raise BridgeError(f"Shell command failed: {err.strip()}", command=[command], stderr=err)
    return process.returncode or 0, out, err
