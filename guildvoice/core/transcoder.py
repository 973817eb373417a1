"""
Transcoder subprocess supervisor.

Each tenant with an active stream owns exactly one ffmpeg process that pulls a
remote audio URL and writes raw s16le PCM to stdout. The supervisor starts
those processes, drains their stderr as diagnostics, and tears them down
gracefully (SIGTERM) with a forced kill (SIGKILL) after a grace window. Teardown
never blocks the caller: reaping happens in a background task.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Set

from prometheus_client import Counter, Gauge

from guildvoice.config import TranscoderConfig
from guildvoice.core.errors import EngineFatalError, SubprocessSpawnFailure
from guildvoice.logging_config import get_logger

logger = get_logger(__name__)

_LIVE_TRANSCODERS = Gauge(
    "guildvoice_live_transcoders",
    "Number of transcoder processes currently owned by the supervisor",
)
_SPAWN_FAILURES = Counter(
    "guildvoice_transcoder_spawn_failures_total",
    "Transcoder processes that could not be started",
)
_FORCED_KILLS = Counter(
    "guildvoice_transcoder_forced_kills_total",
    "Transcoder processes that ignored SIGTERM and were killed",
)


class TranscoderProcess:
    """Handle to one running transcoder; also the PCM source for the player."""

    def __init__(self, tenant_id: str, url: str, process: asyncio.subprocess.Process, exit_check_sec: float = 1.0):
        self.tenant_id = tenant_id
        self.url = url
        self._process = process
        self._exit_check_sec = exit_check_sec
        self.started_at = time.time()
        self.terminate_requested = False
        self.stderr_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def alive(self) -> bool:
        return self._process.returncode is None

    async def wait(self) -> int:
        return await self._process.wait()

    async def read(self, size: int) -> bytes:
        """
        Read one frame of PCM.

        Returns a short (possibly empty) chunk at end of stream. Raises
        EngineFatalError if the stream ended because ffmpeg exited with a
        failure status that the supervisor did not ask for.
        """
        try:
            return await self._process.stdout.readexactly(size)
        except asyncio.IncompleteReadError as exc:
            await self._check_exit()
            return exc.partial

    async def _check_exit(self) -> None:
        if self.terminate_requested:
            return
        try:
            returncode = await asyncio.wait_for(self._process.wait(), timeout=self._exit_check_sec)
        except asyncio.TimeoutError:
            # stdout closed but the process lingers; treat as a clean end
            return
        if returncode != 0:
            raise EngineFatalError(
                f"Transcoder exited with code {returncode}",
                tenant_id=self.tenant_id,
            )

    def send_signal_terminate(self) -> None:
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    def send_signal_kill(self) -> None:
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    @property
    def stderr(self) -> Optional[asyncio.StreamReader]:
        return self._process.stderr


class TranscoderSupervisor:
    """Owns at most one transcoder process per tenant."""

    def __init__(self, config: Optional[TranscoderConfig] = None):
        self.config = config or TranscoderConfig()
        self._processes: Dict[str, TranscoderProcess] = {}
        self._reapers: Set[asyncio.Task] = set()

    def build_command(self, url: str) -> List[str]:
        """ffmpeg invocation: resilient network input, fixed raw PCM output."""
        cfg = self.config
        input_args = [
            '-loglevel', cfg.loglevel,
            '-reconnect', '1',
            '-reconnect_streamed', '1',
            '-reconnect_delay_max', str(cfg.reconnect_delay_max_sec),
            '-analyzeduration', '0',
            '-i', url,
        ]
        output_args = [
            '-f', 's16le',
            '-ar', str(cfg.sample_rate),
            '-ac', str(cfg.channels),
            'pipe:1',
        ]
        return [cfg.ffmpeg_path, *input_args, *output_args]

    async def spawn(self, tenant_id: str, url: str) -> TranscoderProcess:
        """
        Start a transcoder for `url`, replacing the tenant's previous one.

        Args:
            tenant_id: Owning tenant
            url: Remote audio source

        Returns:
            Handle whose read() yields PCM frames

        Raises:
            SubprocessSpawnFailure: ffmpeg could not be executed
        """
        self.terminate_tenant(tenant_id)

        command = self.build_command(url)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            _SPAWN_FAILURES.inc()
            logger.error(
                "Failed to start transcoder",
                tenant_id=tenant_id,
                executable=command[0],
                error=str(exc),
            )
            raise SubprocessSpawnFailure(
                f"Could not start transcoder: {exc}",
                tenant_id=tenant_id,
            ) from exc

        handle = TranscoderProcess(tenant_id, url, process, exit_check_sec=self.config.exit_check_sec)
        handle.stderr_task = asyncio.get_running_loop().create_task(
            self._drain_stderr(handle),
            name=f"transcoder-stderr:{tenant_id}:{handle.pid}",
        )
        self._processes[tenant_id] = handle
        _LIVE_TRANSCODERS.set(len(self._processes))
        logger.info("Transcoder started", tenant_id=tenant_id, pid=handle.pid)
        return handle

    async def _drain_stderr(self, handle: TranscoderProcess) -> None:
        """Log stderr lines; warnings here never count as playback failure."""
        stderr = handle.stderr
        if stderr is None:
            return
        ignored = [pattern.lower() for pattern in self.config.ignored_stderr]
        try:
            async for raw_line in stderr:
                line = raw_line.decode('utf-8', errors='replace').strip()
                if not line or any(pattern in line.lower() for pattern in ignored):
                    continue
                logger.warning(
                    "Transcoder diagnostic",
                    tenant_id=handle.tenant_id,
                    pid=handle.pid,
                    message=line,
                )
        except (OSError, ValueError) as exc:
            logger.debug("Transcoder stderr closed", tenant_id=handle.tenant_id, error=str(exc))

    def terminate(self, handle: TranscoderProcess) -> None:
        """Ask `handle` to exit; a reaper force-kills it after the grace window."""
        if self._processes.get(handle.tenant_id) is handle:
            del self._processes[handle.tenant_id]
            _LIVE_TRANSCODERS.set(len(self._processes))

        if handle.terminate_requested:
            return
        handle.terminate_requested = True

        if handle.alive:
            handle.send_signal_terminate()
        reaper = asyncio.get_running_loop().create_task(
            self._reap(handle),
            name=f"transcoder-reaper:{handle.tenant_id}:{handle.pid}",
        )
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    def terminate_tenant(self, tenant_id: str) -> bool:
        handle = self._processes.get(tenant_id)
        if handle is None:
            return False
        self.terminate(handle)
        return True

    async def _reap(self, handle: TranscoderProcess) -> None:
        try:
            await asyncio.wait_for(handle.wait(), timeout=self.config.kill_grace_sec)
        except asyncio.TimeoutError:
            _FORCED_KILLS.inc()
            logger.warning(
                "Transcoder ignored SIGTERM, killing",
                tenant_id=handle.tenant_id,
                pid=handle.pid,
                grace_sec=self.config.kill_grace_sec,
            )
            handle.send_signal_kill()
            await handle.wait()
        logger.debug(
            "Transcoder reaped",
            tenant_id=handle.tenant_id,
            pid=handle.pid,
            returncode=handle.returncode,
        )

    def get(self, tenant_id: str) -> Optional[TranscoderProcess]:
        return self._processes.get(tenant_id)

    def live_count(self) -> int:
        return len(self._processes)

    @property
    def pending_reapers(self) -> int:
        return len(self._reapers)

    async def shutdown(self) -> None:
        """Terminate every process and wait for all reapers to finish."""
        for handle in list(self._processes.values()):
            self.terminate(handle)
        if self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)
        logger.info("Transcoder supervisor stopped")
