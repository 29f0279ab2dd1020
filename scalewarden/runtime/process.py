"""Bounded subprocess execution shared by the compose runtime and nginx control."""

from __future__ import annotations

import asyncio
import contextlib

from scalewarden.runtime.base import RuntimeCommandError


async def run_command(args: list[str], timeout: float) -> str:
    """Run *args*, return stdout; raise RuntimeCommandError on failure or timeout.

    The child never outlives the call: on timeout or cancellation it is
    killed and reaped before the exception propagates.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise RuntimeCommandError(f"cannot execute {args[0]}: {exc}") from exc
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        await _kill(proc)
        raise RuntimeCommandError(f"command timed out after {timeout}s: {' '.join(args)}") from exc
    except asyncio.CancelledError:
        await _kill(proc)
        raise
    if proc.returncode != 0:
        raise RuntimeCommandError(
            f"command exited {proc.returncode}: {' '.join(args)}: {stderr.decode(errors='replace').strip()[:300]}"
        )
    return stdout.decode(errors="replace")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()
