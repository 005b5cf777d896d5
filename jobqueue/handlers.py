"""Built-in processors used by the CLI runner."""

import asyncio
from typing import Any, Dict

from .errors import FatalJobError
from .processors import JobContext


async def echo(payload: Any, context: JobContext) -> Any:
    """Return the payload unchanged."""
    context.update_progress(100, "Echoed payload")
    return payload


async def sleep(payload: Any, context: JobContext) -> Dict[str, float]:
    """Sleep for ``payload["seconds"]`` in small steps, reporting progress.

    Stops early, without a result, if the job is cancelled.
    """
    seconds = float((payload or {}).get("seconds", 1))
    steps = max(int(seconds * 10), 1)
    for step in range(steps):
        if context.is_cancelled():
            return {"slept": seconds * step / steps}
        await asyncio.sleep(seconds / steps)
        context.update_progress((step + 1) * 100 / steps)
    return {"slept": seconds}


async def shell(payload: Any, context: JobContext) -> Dict[str, Any]:
    """Run ``payload["command"]`` in a shell.

    A non-zero exit code raises, which the scheduler treats as retryable.
    The job's timeout is enforced by the scheduler, so no timeout is set here.
    """
    command = (payload or {}).get("command")
    if not command:
        raise FatalJobError("shell job payload needs a 'command'")

    context.log(f"Running: {command}")
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        raise

    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    if process.returncode != 0:
        raise RuntimeError(err.strip() or f"Exit code: {process.returncode}")
    return {"returncode": process.returncode, "stdout": out, "stderr": err}


BUILTIN_HANDLERS = {
    "echo": echo,
    "sleep": sleep,
    "shell": shell,
}


def register_builtin_handlers(scheduler) -> None:
    for job_type, handler in BUILTIN_HANDLERS.items():
        scheduler.register_processor(job_type, handler)
