"""Command dispatch: run configured programs with the webhook body on stdin."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from webhook_listener.config import CommandRule, OutputPolicy
from webhook_listener.log_context import set_log_context
from webhook_listener.webhook.models import DispatchResult, status_for_returncode

logger = logging.getLogger(__name__)

_LOG_OUTPUT_LIMIT = 2000
_READ_CHUNK = 64 * 1024

_STREAMS: dict[str, int | None] = {
    "inherit": None,
    "discard": asyncio.subprocess.DEVNULL,
    "log": asyncio.subprocess.PIPE,
}


class CommandDispatcher:
    """Spawns one background task per matched rule.

    Tasks are never cancelled by the dispatcher; `drain` waits for the ones
    still running. Outcomes are only logged.
    """

    def __init__(self, *, output: OutputPolicy = "inherit") -> None:
        self._output = output
        self._background_tasks: set[asyncio.Task[DispatchResult | None]] = set()

    @property
    def pending(self) -> int:
        """Number of dispatched commands that have not finished yet."""
        return len(self._background_tasks)

    def dispatch(
        self, rules: Iterable[CommandRule], event: str, body: bytes
    ) -> list[asyncio.Task[DispatchResult | None]]:
        """Start every rule concurrently and return immediately."""
        tasks: list[asyncio.Task[DispatchResult | None]] = []
        for rule in rules:
            task = asyncio.create_task(self._safe_run(rule, event, body))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)
            tasks.append(task)
        return tasks

    async def drain(self) -> None:
        """Wait until all in-flight commands have finished."""
        while self._background_tasks:
            logger.info("Waiting for %d running command(s)", len(self._background_tasks))
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    async def _safe_run(self, rule: CommandRule, event: str, body: bytes) -> DispatchResult | None:
        """Run a command in a task with exception protection."""
        set_log_context(operation="cmd", event=event)
        try:
            return await self.run_command(rule, event, body)
        except Exception:
            logger.exception("Command dispatch error: %s", rule.command)
            return None

    async def run_command(self, rule: CommandRule, event: str, body: bytes) -> DispatchResult:
        """Spawn *rule*, feed *body* to its stdin, close stdin and wait for exit."""
        stream = _STREAMS[self._output]
        logger.info("Running command: %s %s", rule.command, " ".join(rule.args))
        try:
            proc = await asyncio.create_subprocess_exec(
                rule.command,
                *rule.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=stream,
                stderr=stream,
            )
        except OSError as exc:
            logger.error("Failed to spawn command %s: %s", rule.command, exc)  # noqa: TRY400
            return DispatchResult(
                event=event,
                command=rule.command,
                args=rule.args,
                returncode=None,
                status="error:spawn",
            )

        if self._output == "log":
            # Drain both pipes to EOF but keep only the head of each.
            stdout, stderr, _ = await asyncio.gather(
                _read_clipped(proc.stdout),
                _read_clipped(proc.stderr),
                _feed_stdin(proc, body),
            )
            await proc.wait()
            if stdout:
                logger.info("Command stdout (%s): %s", rule.command, _clip(stdout))
            if stderr:
                logger.info("Command stderr (%s): %s", rule.command, _clip(stderr))
        else:
            # communicate() closes stdin after writing, so the child sees EOF.
            await proc.communicate(body)

        returncode = proc.returncode
        assert returncode is not None
        if returncode >= 0:
            logger.info("Command finished with exit code %d: %s", returncode, rule.command)
        else:
            logger.warning(
                "Command finished without exit code (signal %d): %s", -returncode, rule.command
            )
        return DispatchResult(
            event=event,
            command=rule.command,
            args=rule.args,
            returncode=returncode,
            status=status_for_returncode(returncode),
        )


def _clip(output: bytes) -> str:
    return output.decode(errors="replace").strip()[:_LOG_OUTPUT_LIMIT]


async def _feed_stdin(proc: asyncio.subprocess.Process, body: bytes) -> None:
    """Write *body* and close stdin; a child that exits without reading is fine."""
    assert proc.stdin is not None
    try:
        proc.stdin.write(body)
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Command closed its stdin before reading the whole body")
    finally:
        proc.stdin.close()


async def _read_clipped(
    stream: asyncio.StreamReader | None, limit: int = _LOG_OUTPUT_LIMIT
) -> bytes:
    """Read *stream* to EOF, keeping only the first *limit* bytes."""
    if stream is None:
        return b""
    kept = bytearray()
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return bytes(kept)
        if len(kept) < limit:
            kept += chunk[: limit - len(kept)]
