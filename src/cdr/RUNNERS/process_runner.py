# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Execution of system processes with log redirection and lifecycle management.
"""
import asyncio
import logging
import os
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Manages the execution of a single system process on the event loop.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[asyncio.subprocess.Process] = None
        self._log_handle = None

    async def start(self,
                    command: List[str],
                    env: Dict[str, str],
                    working_dir: Optional[str] = None):
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.
        """
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = None
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._log_handle = open(self.log_file, 'a')
            stdout = self._log_handle

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))
        try:
            # No shell: arguments are passed verbatim (CWE-78)
            self.process = await asyncio.create_subprocess_exec(
                *command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=asyncio.subprocess.STDOUT if stdout else None,
            )
        except OSError as e:
            logger.error("[%s] Failed to start: %s", self.name, e)
            self._close_log()
            raise

    async def wait(self) -> Optional[int]:
        """
        Waits for the process to exit.

        Returns:
            Optional[int]: The exit code, or None if the process was never started.
        """
        if self.process is None:
            return None
        code = await self.process.wait()
        self._close_log()
        return code

    async def stop(self, timeout: float = 10) -> bool:
        """
        Stops the process tree with SIGTERM, followed by SIGKILL if it doesn't stop.

        Args:
            timeout (float): Seconds to wait for termination before killing.

        Returns:
            bool: True if the process had to be killed.
        """
        if not self.is_running():
            self._close_log()
            return False

        logger.info("[%s] Stopping process...", self.name)
        children = self._children()
        self._signal([self.process.pid], children, kill=False)
        forced = False
        try:
            await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("[%s] Process did not terminate, killing...", self.name)
            self._signal([self.process.pid], children, kill=True)
            await self.process.wait()
            forced = True

        # Orphans that outlived their parent
        self._signal([], [c for c in children if c.is_running()], kill=True)
        self._close_log()
        return forced

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.
        """
        return self.process is not None and self.process.returncode is None

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process, or None while it runs.
        """
        if self.process:
            return self.process.returncode
        return None

    def _children(self) -> List[psutil.Process]:
        try:
            return psutil.Process(self.process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return []

    def _signal(self, pids: List[int], children: List[psutil.Process], kill: bool):
        procs = list(children)
        for pid in pids:
            try:
                procs.insert(0, psutil.Process(pid))
            except psutil.NoSuchProcess:
                continue
        for proc in procs:
            try:
                if kill:
                    proc.kill()
                else:
                    proc.terminate()
            except psutil.NoSuchProcess:
                continue

    def _close_log(self):
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None
