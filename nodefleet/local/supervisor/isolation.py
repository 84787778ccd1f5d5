"""
Best-effort resource isolation for worker nodes.

Two providers share one interface: CgroupIsolation writes cgroup v2 control
files, NullIsolation does nothing. select_isolation_provider() probes the
host once at startup and picks one; callers never check for the facility
themselves. No failure in this module ever stops a node from starting.
"""
import os
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from nodefleet.local.config import MergedSettings

log = logging.getLogger(__name__)


class IsolationProvider:
    """Interface for per-node resource scopes."""
    enabled = False

    @property
    def status(self) -> str:
        return "enabled" if self.enabled else "degraded"

    def create_scope(self, index: int) -> Optional[Path]:
        raise NotImplementedError

    def set_cpu_limit(self, scope: Optional[Path], cores: int) -> None:
        raise NotImplementedError

    def set_memory_limit(self, scope: Optional[Path], limit_bytes: int) -> None:
        raise NotImplementedError

    def attach(self, scope: Optional[Path], pid: int) -> None:
        raise NotImplementedError

    def release(self, scope: Optional[Path]) -> None:
        raise NotImplementedError


class NullIsolation(IsolationProvider):
    """Used when cgroup v2 is unavailable. Every operation succeeds and does nothing."""

    def create_scope(self, index: int) -> Optional[Path]:
        return None

    def set_cpu_limit(self, scope: Optional[Path], cores: int) -> None:
        pass

    def set_memory_limit(self, scope: Optional[Path], limit_bytes: int) -> None:
        pass

    def attach(self, scope: Optional[Path], pid: int) -> None:
        pass

    def release(self, scope: Optional[Path]) -> None:
        pass


class CgroupIsolation(IsolationProvider):
    """
    cgroup v2 binding. Each node gets `<root>/<group>/node-<index>`, so limits
    of different nodes never overwrite each other and a restart reuses the
    same scope.
    """
    enabled = True

    def __init__(self, root: Path, group: str, cpu_period: int = 100000) -> None:
        """
        :param root: The cgroup v2 mount point, usually /sys/fs/cgroup.
        :param group: The parent group holding all node scopes.
        :param cpu_period: The cpu.max period in microseconds.
        """
        self.root = Path(root)
        self.group_path = self.root / group
        self.cpu_period = cpu_period

    def _write(self, path: Path, value: str) -> bool:
        try:
            path.write_text(value)
            return True
        except OSError as e:
            log.warning(f"Could not write '{value}' to {path}: {e}")
            return False

    def _enable_controllers(self, cgroup_dir: Path) -> None:
        """Delegates the cpu and memory controllers to the children of a cgroup."""
        control = cgroup_dir / "cgroup.subtree_control"
        if not control.exists():
            return
        enabled = control.read_text().split()
        missing = [c for c in ("cpu", "memory") if c not in enabled]
        if missing:
            self._write(control, " ".join(f"+{c}" for c in missing))

    def create_scope(self, index: int) -> Optional[Path]:
        scope = self.group_path / f"node-{index}"
        try:
            self._enable_controllers(self.root)
            self.group_path.mkdir(exist_ok=True)
            self._enable_controllers(self.group_path)
            scope.mkdir(exist_ok=True)
        except OSError as e:
            log.warning(f"Could not create cgroup scope for node-{index}: {e}")
            return None
        log.debug(f"Cgroup scope ready for node-{index}: {scope}")
        return scope

    def set_cpu_limit(self, scope: Optional[Path], cores: int) -> None:
        if scope is None:
            return
        quota = cores * self.cpu_period
        self._write(scope / "cpu.max", f"{quota} {self.cpu_period}")

    def set_memory_limit(self, scope: Optional[Path], limit_bytes: int) -> None:
        if scope is None:
            return
        self._write(scope / "memory.max", str(limit_bytes))

    def attach(self, scope: Optional[Path], pid: int) -> None:
        if scope is None:
            return
        if self._write(scope / "cgroup.procs", str(pid)):
            log.debug(f"Assigned PID {pid} to cgroup: {scope}")

    def release(self, scope: Optional[Path]) -> None:
        """Removes a scope once its processes are gone. Non-empty scopes are left in place."""
        if scope is None:
            return
        try:
            scope.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.debug(f"Could not remove cgroup scope {scope}: {e}")


def cgroup_v2_available(root: Path) -> bool:
    """Checks for a writable cgroup v2 hierarchy at the given mount point."""
    root = Path(root)
    return (root / "cgroup.controllers").is_file() and os.access(root, os.W_OK)


def select_isolation_provider(config: "MergedSettings") -> IsolationProvider:
    """
    Picks the isolation provider once for the lifetime of the supervisor.

    :param config: The merged settings.
    :return: CgroupIsolation when cgroup v2 is usable, otherwise NullIsolation.
    """
    if not config.ISOLATION_ENABLED:
        log.warning("Resource isolation disabled by configuration; using process-level limits only.")
        return NullIsolation()
    if not cgroup_v2_available(config.CGROUP_ROOT):
        log.warning("Cgroups v2 not available, using process-level limits only.")
        return NullIsolation()
    log.info(f"Cgroup v2 isolation enabled under {Path(config.CGROUP_ROOT) / config.CGROUP_GROUP}")
    return CgroupIsolation(config.CGROUP_ROOT, config.CGROUP_GROUP, config.CGROUP_CPU_PERIOD)
