"""Subprocess execution service for NoteSetup."""

import asyncio
import logging
import os
from typing import Dict, List, Optional, Sequence

from notesetup.errors import CommandFailed, CommandTimeout, ProcessSpawnError, SetupCancelled
from notesetup.models import CommandResult
from notesetup.services.stage_tracker import INSTALL_LOG, StageTracker


async def cancellable_sleep(seconds: float, cancel_event: Optional[asyncio.Event], waiting_for: str):
    """Sleeps for ``seconds`` unless ``cancel_event`` is set first."""
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), seconds)
    except asyncio.TimeoutError:
        return
    raise SetupCancelled(f"Setup was cancelled while waiting for {waiting_for}.")


class CommandRunner:
    """Runs external programs and optionally streams their output to observers."""

    TERMINATE_GRACE_SECONDS = 5.0
    READ_CHUNK_SIZE = 65536

    def __init__(
        self,
        tracker: StageTracker,
        logger: Optional[logging.Logger] = None,
        default_timeout: Optional[float] = None,
    ):
        self.tracker = tracker
        self.logger = logger or logging.getLogger(__name__)
        self.default_timeout = default_timeout

    async def run(
        self,
        program: str,
        args: Sequence[str] = (),
        stream: bool = False,
        tolerates_failure: bool = False,
        topic: str = INSTALL_LOG,
        input_text: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        cmd = [program, *args]
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        process_env = None
        if env:
            process_env = dict(os.environ)
            process_env.update(env)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
            )
        except OSError as exc:
            raise ProcessSpawnError(program, exc) from exc

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        readers = [
            asyncio.ensure_future(self._pump(process.stdout, stdout_lines, stream, topic, "stdout")),
            asyncio.ensure_future(self._pump(process.stderr, stderr_lines, stream, topic, "stderr")),
        ]
        if input_text is not None:
            readers.append(asyncio.ensure_future(self._feed(process, input_text)))

        effective_timeout = timeout if timeout is not None else self.default_timeout
        completion = asyncio.ensure_future(self._complete(process, readers))
        waiters = {completion}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=effective_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._terminate(process, completion)
            raise
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if completion not in done:
            await self._terminate(process, completion)
            if cancel_waiter is not None and cancel_waiter in done:
                raise SetupCancelled(f"Setup was cancelled while running `{program}`.")
            raise CommandTimeout(program, effective_timeout)

        try:
            exit_code = completion.result()
        except Exception:
            await self._terminate(process, completion)
            raise
        result = CommandResult(
            exit_code=exit_code,
            stdout_lines=tuple(stdout_lines),
            stderr_lines=tuple(stderr_lines),
        )

        if stdout_lines and not stream:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if not result.succeeded:
            message = f"Command exited with {exit_code}: {cmd_str}"
            if tolerates_failure:
                self.logger.debug(message)
            else:
                self.logger.warning(message)

        return result

    @staticmethod
    def require_success(result: CommandResult, description: str) -> CommandResult:
        if not result.succeeded:
            raise CommandFailed(description, result.exit_code)
        return result

    async def _pump(self, reader, sink: List[str], stream: bool, topic: str, stream_name: str):
        # Chunked reads so a single line is never bound by the stream buffer limit.
        if reader is None:
            return
        pending = bytearray()
        while True:
            chunk = await reader.read(self.READ_CHUNK_SIZE)
            if not chunk:
                break
            pending.extend(chunk)
            *complete, rest = pending.split(b"\n")
            pending = bytearray(rest)
            for raw in complete:
                self._emit(raw, sink, stream, topic, stream_name)
        if pending:
            self._emit(bytes(pending), sink, stream, topic, stream_name)

    def _emit(self, raw: bytes, sink: List[str], stream: bool, topic: str, stream_name: str):
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        sink.append(line)
        if stream:
            self.tracker.log(topic, line, stream_name)

    async def _feed(self, process, input_text: str):
        try:
            process.stdin.write(input_text.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        finally:
            process.stdin.close()

    async def _complete(self, process, readers) -> Optional[int]:
        try:
            await asyncio.gather(*readers)
        except BaseException:
            for reader in readers:
                reader.cancel()
            raise
        return await process.wait()

    async def _terminate(self, process, completion):
        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), self.TERMINATE_GRACE_SECONDS)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                self.logger.warning("Process %s ignored SIGTERM, killing it.", process.pid)
                process.kill()
                await process.wait()
        if completion.done():
            return
        completion.cancel()
        try:
            await completion
        except asyncio.CancelledError:
            pass
