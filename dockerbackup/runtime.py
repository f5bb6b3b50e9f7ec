"""
Container runtime and service-manager collaborators.

Containers and volumes are driven through the ``docker`` CLI; the platform
service through ``systemctl`` (``service`` as a fallback). The post-restore
functional probe talks to the daemon through the Docker SDK.
"""
import os
import shutil
import subprocess
import time

import docker
from docker.errors import DockerException

from dockerbackup.utils import get_logger

logger = get_logger(__name__)

DOCKER_TIMEOUT = 120


def run_command(cmd_parts, timeout=DOCKER_TIMEOUT, cwd=None, env=None):
    """Run a command and return the CompletedProcess (output captured as text).

    Missing binaries and timeouts are reported as a non-zero CompletedProcess
    so callers only ever inspect ``returncode``.
    """
    logger.debug("Running: %s", ' '.join(cmd_parts))
    try:
        return subprocess.run(
            cmd_parts,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=env,
        )
    except FileNotFoundError as e:
        return subprocess.CompletedProcess(cmd_parts, 127, '', str(e))
    except subprocess.TimeoutExpired as e:
        return subprocess.CompletedProcess(cmd_parts, 124, '', f"timed out after {e.timeout}s")


def _lines(output):
    return [line.strip() for line in (output or '').splitlines() if line.strip()]


class DockerRuntime:
    """Workload and volume queries/actions against the local Docker engine."""

    def __init__(self, binary='docker'):
        self.binary = binary

    def available(self):
        return shutil.which(self.binary) is not None

    def _docker(self, *args, timeout=DOCKER_TIMEOUT):
        return run_command([self.binary, *args], timeout=timeout)

    # Volumes
    def list_volumes(self):
        result = self._docker('volume', 'ls', '-q')
        if result.returncode != 0:
            raise RuntimeError(f"docker volume ls failed: {result.stderr.strip()}")
        return sorted(_lines(result.stdout))

    def volume_exists(self, name):
        return self._docker('volume', 'inspect', name).returncode == 0

    def volume_mountpoint(self, name):
        result = self._docker('volume', 'inspect', '--format', '{{.Mountpoint}}', name)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def create_volume(self, name):
        result = self._docker('volume', 'create', name)
        return result.returncode == 0, result.stderr.strip()

    # Workloads
    def containers_for_volume(self, volume, running_only=False):
        """Return names of containers bound to ``volume`` (all, or running only)."""
        args = ['ps']
        if not running_only:
            args.append('-a')
        args += ['--filter', f'volume={volume}', '--format', '{{.Names}}']
        result = self._docker(*args)
        if result.returncode != 0:
            raise RuntimeError(f"docker ps for volume {volume} failed: {result.stderr.strip()}")
        return sorted(_lines(result.stdout))

    def is_running(self, name):
        result = self._docker('inspect', '--format', '{{.State.Running}}', name)
        return result.returncode == 0 and result.stdout.strip() == 'true'

    def stop(self, name):
        result = self._docker('stop', name)
        return result.returncode == 0, (result.stderr or result.stdout).strip()

    def start(self, name):
        result = self._docker('start', name)
        return result.returncode == 0, (result.stderr or result.stdout).strip()

    def root_dir(self):
        result = self._docker('info', '--format', '{{.DockerRootDir}}', timeout=30)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def prune(self, kind, dry_run=False):
        """Run ``docker <kind> prune -f``; ``kind`` is container/image/volume/network/builder."""
        if dry_run:
            return True, f"Would run: {self.binary} {kind} prune -f"
        result = self._docker(kind, 'prune', '-f', timeout=600)
        return result.returncode == 0, (result.stdout if result.returncode == 0 else result.stderr).strip()

    def dangling(self, kind):
        """List what ``prune`` would remove for dry-run reporting."""
        queries = {
            'container': ['ps', '-a', '-q', '--filter', 'status=exited', '--filter', 'status=created'],
            'image': ['images', '-q', '--filter', 'dangling=true'],
            'volume': ['volume', 'ls', '-q', '--filter', 'dangling=true'],
            'network': ['network', 'ls', '-q', '--filter', 'type=custom'],
        }
        if kind not in queries:
            return []
        result = self._docker(*queries[kind])
        return _lines(result.stdout) if result.returncode == 0 else []

    def probe(self):
        """Functional check through the Docker SDK.

        Returns a tuple ``(ok, detail)``. The daemon must answer ``ping``; a
        failing ``hello-world`` run is tolerated when containers are running.
        """
        try:
            client = docker.from_env()
            client.ping()
        except (DockerException, OSError) as e:
            return False, f"docker daemon not responding: {e}"

        try:
            client.containers.run('hello-world', remove=True)
            return True, 'hello-world probe succeeded'
        except (DockerException, OSError) as e:
            try:
                running = client.containers.list()
            except (DockerException, OSError):
                running = []
            if running:
                return True, f"hello-world probe failed ({e}) but {len(running)} container(s) are running"
            return False, f"hello-world probe failed: {e}"
        finally:
            client.close()


class ServiceManager:
    """Start/stop the platform service and socket through the init system."""

    def __init__(self, service='docker.service', socket='docker.socket', poll_interval=1.0):
        self.service = service
        self.socket = socket
        self.poll_interval = poll_interval
        self.use_systemctl = shutil.which('systemctl') is not None

    def is_active(self):
        if self.use_systemctl:
            result = run_command(['systemctl', 'is-active', '--quiet', self.service], timeout=30)
            return result.returncode == 0
        result = run_command(['service', self.service.replace('.service', ''), 'status'], timeout=30)
        return result.returncode == 0

    def stop(self):
        if self.use_systemctl:
            result = run_command(['systemctl', 'stop', self.socket, self.service], timeout=120)
        else:
            result = run_command(['service', self.service.replace('.service', ''), 'stop'], timeout=120)
        return result.returncode == 0, result.stderr.strip()

    def start(self):
        if self.use_systemctl:
            result = run_command(['systemctl', 'start', self.service, self.socket], timeout=120)
        else:
            result = run_command(['service', self.service.replace('.service', ''), 'start'], timeout=120)
        return result.returncode == 0, result.stderr.strip()

    def kill(self):
        """Forcefully stop the service and clear its failed state."""
        if self.use_systemctl:
            run_command(['systemctl', 'kill', '--signal=SIGKILL', self.service], timeout=30)
            run_command(['systemctl', 'reset-failed', self.service, self.socket], timeout=30)
        else:
            run_command(['pkill', '-KILL', 'dockerd'], timeout=30)

    def wait_for(self, active, timeout):
        """Poll until the service reaches the wanted state; False on timeout."""
        deadline = time.monotonic() + timeout
        while True:
            if self.is_active() == active:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)


def is_root():
    return hasattr(os, 'geteuid') and os.geteuid() == 0
