"""
Provides the utilities(functions) needed by the deploy server:
    - run_command
    - stream_command
    - branch_from_ref
"""

import os
import signal
import subprocess
import threading
from typing import Dict, Iterator, List, Optional

from deploy_system.errors import CommandError

REF_PREFIX = "refs/heads/"


def run_command(args: List[str], cwd: Optional[str] = None, timeout: Optional[float] = None,
                env: Optional[Dict[str, str]] = None) -> str:
    """
    Execute a command and return its combined output

    :param args: command and arguments to execute
    :param cwd: working directory
    :param timeout: seconds before the command is killed
    :param env: extra environment variables
    :return: decoded output of the command
    :raises CommandError: If the command exits with a non-zero status or times out
    """
    command = " ".join(args)
    full_env = dict(os.environ, **env) if env else None
    try:
        output = subprocess.check_output(args, cwd=cwd, env=full_env, timeout=timeout,
                                         stderr=subprocess.STDOUT)
        return output.decode(errors="replace")
    except subprocess.CalledProcessError as e:
        raise CommandError(command, e.returncode, e.output.decode(errors="replace").strip())
    except subprocess.TimeoutExpired as e:
        raise CommandError(command, None, (e.output or b"").decode(errors="replace").strip(), timed_out=True)
    except OSError as e:
        raise CommandError(command, None, str(e))


def stream_command(command: str, cwd: Optional[str] = None, timeout: Optional[float] = None) -> Iterator[str]:
    """
    Run a shell command and yield its output line by line as it is produced.
    stderr is merged into stdout.

    :param command: shell command line
    :param cwd: working directory
    :param timeout: seconds before the command is killed
    :raises CommandError: on non-zero exit or timeout
    """
    proc = subprocess.Popen(command, shell=True, cwd=cwd, stdout=subprocess.PIPE,
                            stderr=subprocess.STDOUT, bufsize=1, text=True,
                            encoding="utf-8", errors="replace",
                            start_new_session=True)
    expired = threading.Event()

    def kill():
        # the whole group, so children of the shell release the pipe too
        expired.set()
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    timer = threading.Timer(timeout, kill) if timeout else None
    if timer:
        timer.daemon = True
        timer.start()
    try:
        for line in proc.stdout:
            yield line.rstrip("\n")
        returncode = proc.wait()
    finally:
        if timer:
            timer.cancel()
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        proc.stdout.close()

    if expired.is_set():
        raise CommandError(command, returncode, timed_out=True)
    if returncode != 0:
        raise CommandError(command, returncode)


def branch_from_ref(ref: str) -> str:
    """'refs/heads/main' -> 'main'; anything else is returned unchanged"""
    if ref and ref.startswith(REF_PREFIX):
        return ref[len(REF_PREFIX):]
    return ref or ""
