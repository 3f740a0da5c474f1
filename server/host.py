"""Run the timer sync server as a child process of a hosting application.

`ServerHost` is what a desktop shell embeds to offer "start server" / "stop
server" buttons and a running indicator. It never relaunches a crashed
server; it only reports what happened.
"""

from __future__ import annotations
from enum import Enum
import logging
import os
import subprocess
import sys
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class HostStatus(str, Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    STOPPED = "stopped"


class ServerHost:
    def __init__(
        self,
        command: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        stop_timeout: float = 5.0,
        startup_grace: float = 0.2,
    ):
        self.command = command or [sys.executable, "-m", "server.main"]
        self.env = env
        self.stop_timeout = stop_timeout
        # a child that exits within this window (e.g. port in use) failed to start
        self.startup_grace = startup_grace
        self._process: Optional[subprocess.Popen] = None
        self._started = False

    def status(self) -> HostStatus:
        """Return the current status without blocking."""
        if self._process is not None:
            if self._process.poll() is None:
                return HostStatus.RUNNING
            logger.warning("Server process exited with code %s", self._process.returncode)
            self._process = None
        return HostStatus.STOPPED if self._started else HostStatus.NOT_STARTED

    def is_running(self) -> bool:
        return self.status() == HostStatus.RUNNING

    def start(self) -> bool:
        """Spawn the server. Returns True if it is still running after the grace period."""
        if self.is_running():
            return True
        env = dict(os.environ)
        if self.env:
            env.update(self.env)
        try:
            self._process = subprocess.Popen(self.command, env=env)
        except OSError:
            logger.warning("Failed to start server: %s", " ".join(self.command), exc_info=True)
            self._process = None
            return False
        self._started = True
        try:
            code = self._process.wait(timeout=self.startup_grace)
        except subprocess.TimeoutExpired:
            logger.info("Server process started (pid %s)", self._process.pid)
            return True
        logger.warning("Server process exited during startup with code %s", code)
        self._process = None
        return False

    def stop(self) -> bool:
        """Terminate the server. Returns False if it was not running."""
        proc = self._process
        if proc is None or proc.poll() is not None:
            self._process = None
            return False
        proc.terminate()
        try:
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Server did not exit after %.1fs; killing it", self.stop_timeout)
            proc.kill()
            proc.wait()
        self._process = None
        logger.info("Server process stopped")
        return True
