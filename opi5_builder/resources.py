"""Scoped lifecycle for directories, loop devices, mounts and chroots.

Every acquisition registers its handle with the ResourceScope that owns it
before any further step can fail, so the release is reachable from every later
failure branch. Scopes release in strict reverse acquisition order on normal
exit, on a BuildError, and on cancellation (which arrives as a Cancelled
BuildError raised from the interrupted command).

Teardown commands run with ``cancellable=False`` so a pending cancellation
never prevents an unmount or a loop-device detach.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from opi5_builder.errors import BuildError, make_error
from opi5_builder.execution.command import Command
from opi5_builder.execution.runner import CommandExecutor
from opi5_builder.logs import log_error_context
from opi5_builder.types import ErrorContext, ErrorKind, ResourceKind

logger = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/mounts")

# Mounts performed when entering a chroot: (source, relative target, fstype, options)
CHROOT_MOUNTS: tuple[tuple[str, str, str | None, tuple[str, ...]], ...] = (
    ("proc", "proc", "proc", ()),
    ("sysfs", "sys", "sysfs", ()),
    ("/dev", "dev", None, ("bind",)),
    ("/dev/pts", "dev/pts", None, ("bind",)),
)

ReleaseFn = Callable[[], "ErrorContext | None"]


@dataclass
class ManagedResource:
    """A handle owned by exactly one scope.

    Attributes:
        kind: Resource kind.
        handle: Path or device node identifying the resource.
        acquired_at: Acquisition time (UTC).
        released: Whether release() has already run.
    """

    kind: ResourceKind
    handle: str
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    released: bool = False
    _release_fn: ReleaseFn | None = field(default=None, repr=False)

    def release(self) -> ErrorContext | None:
        """Release the resource; calling it again is a no-op.

        Returns:
            ErrorContext if the teardown step failed, else None.
        """
        if self.released:
            return None
        self.released = True
        if self._release_fn is None:
            return None
        logger.debug("Releasing %s: %s", self.kind.value, self.handle)
        return self._release_fn()


class ResourceScope:
    """Owner of the resources acquired within one function scope.

    Use as a context manager::

        with ResourceScope("format") as scope:
            loop = attach_loop_device(scope, executor, image)
            ...

    Attributes:
        name: Label used in log messages.
        resources: Resources in acquisition order.
        release_errors: Failures recorded while releasing.
    """

    def __init__(self, name: str = "scope") -> None:
        self.name = name
        self.resources: list[ManagedResource] = []
        self.release_errors: list[ErrorContext] = []
        self._stack = ExitStack()

    def register(self, resource: ManagedResource) -> ManagedResource:
        """Take ownership of a freshly acquired resource."""
        self.resources.append(resource)
        self._stack.callback(self._release_one, resource)
        logger.debug("Scope %s acquired %s: %s", self.name, resource.kind.value, resource.handle)
        return resource

    def owns(self, resource: ManagedResource) -> bool:
        return any(r is resource for r in self.resources)

    def active(self, kind: ResourceKind | None = None) -> list[ManagedResource]:
        """Resources not yet released, optionally filtered by kind."""
        return [r for r in self.resources if not r.released and (kind is None or r.kind is kind)]

    def close(self) -> None:
        """Release every owned resource in reverse acquisition order."""
        self._stack.close()

    def _release_one(self, resource: ManagedResource) -> None:
        error = resource.release()
        if error is not None:
            self.release_errors.append(error)
            log_error_context(error)

    def __enter__(self) -> ResourceScope:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.active():
            logger.info("Releasing %d resource(s) held by %s", len(self.active()), self.name)
        self.close()


def acquire_directory(scope: ResourceScope, path: Path, temporary: bool = False) -> ManagedResource:
    """Create a directory (idempotently) and register it with the scope.

    Args:
        scope: Owning scope.
        path: Directory to create, including parents.
        temporary: Remove the directory on release if this call created it
            and it is empty by then.

    Returns:
        The registered ManagedResource.

    Raises:
        BuildError: PermissionDenied or ResourceUnavailable.
    """
    created = not path.exists()
    try:
        path.mkdir(parents=True, exist_ok=True)
    except PermissionError as e:
        raise make_error(ErrorKind.PERMISSION_DENIED, f"Cannot create directory {path}: {e}") from e
    except OSError as e:
        raise make_error(ErrorKind.RESOURCE_UNAVAILABLE, f"Cannot create directory {path}: {e}") from e

    def remove() -> ErrorContext | None:
        try:
            path.rmdir()
        except OSError as e:
            logger.warning("Leaving directory %s in place: %s", path, e)
        return None

    release = remove if temporary and created else None
    return scope.register(ManagedResource(ResourceKind.DIRECTORY, str(path), _release_fn=release))


def attach_loop_device(scope: ResourceScope, executor: CommandExecutor, image: Path) -> ManagedResource:
    """Bind an image file to a free loop device with partition scanning.

    The device node is registered with the scope as soon as losetup reports
    it, before any partition or mount work, so it is detached on every later
    failure path.

    Args:
        scope: Owning scope.
        executor: Command executor.
        image: Image file to bind.

    Returns:
        ManagedResource whose handle is the device node (e.g. /dev/loop3).

    Raises:
        BuildError: If the device could not be bound.
    """
    result = executor.run(
        Command.of("losetup", "--find", "--show", "--partscan", image, capture=True),
        cancellable=False,
    )
    device = _last_line(result.output)
    if device:
        resource = scope.register(
            ManagedResource(
                ResourceKind.LOOP_DEVICE,
                device,
                _release_fn=lambda: _detach_loop(executor, device),
            )
        )
        logger.info("Attached %s to %s", image, device)
    if result.error is not None:
        raise BuildError(result.error)
    if not device:
        raise make_error(
            ErrorKind.RESOURCE_UNAVAILABLE,
            f"losetup did not report a loop device for {image}",
            command=result.command,
        )
    # Partition nodes appear asynchronously; settle is best effort.
    executor.run(Command.of("udevadm", "settle"), cancellable=False)
    return resource


def partition_device(loop: ManagedResource, number: int) -> str:
    """Device node of a partition on an attached loop device."""
    return f"{loop.handle}p{number}"


def mount(
    scope: ResourceScope,
    executor: CommandExecutor,
    source: str,
    target: Path,
    *,
    fstype: str | None = None,
    options: Sequence[str] = (),
    backing: ManagedResource | None = None,
) -> ManagedResource:
    """Mount a filesystem and register the unmount with the scope.

    Args:
        scope: Owning scope.
        executor: Command executor.
        source: Device node, bind source or pseudo filesystem name.
        target: Mount point; created if missing.
        fstype: Filesystem type passed with -t.
        options: Mount options passed with -o.
        backing: Loop device the source lives on; must still be held.

    Returns:
        The registered ManagedResource (handle is the mount point).

    Raises:
        BuildError: PreconditionMissing if the backing device is not held,
            otherwise the mount command's failure.
    """
    if backing is not None and (backing.released or not scope.owns(backing)):
        raise make_error(
            ErrorKind.PRECONDITION_MISSING,
            f"Cannot mount {source}: backing device {backing.handle} is not attached",
        )

    target.mkdir(parents=True, exist_ok=True)
    args: list[str] = []
    if fstype:
        args += ["-t", fstype]
    if options:
        args += ["-o", ",".join(options)]
    result = executor.run(Command.of("mount", *args, source, target), cancellable=False)
    if result.error is not None:
        raise BuildError(result.error)

    return scope.register(
        ManagedResource(
            ResourceKind.MOUNT,
            str(target),
            _release_fn=lambda: _unmount(executor, target),
        )
    )


def enter_chroot(scope: ResourceScope, executor: CommandExecutor, root: Path) -> ManagedResource:
    """Prepare a root filesystem for running commands under chroot.

    Mounts /proc, /sys, /dev and /dev/pts inside the root. The returned
    handle is released first; the pseudo filesystems unmount after it in
    reverse order.

    Args:
        scope: Owning scope.
        executor: Command executor.
        root: Root filesystem directory.

    Returns:
        ManagedResource of kind CHROOT.
    """
    if not root.is_dir():
        raise make_error(ErrorKind.PRECONDITION_MISSING, f"Root filesystem not found: {root}")
    for source, relative, fstype, options in CHROOT_MOUNTS:
        mount(scope, executor, source, root / relative, fstype=fstype, options=options)
    logger.info("Entered chroot %s", root)
    return scope.register(ManagedResource(ResourceKind.CHROOT, str(root)))


def get_mount_points_under(path: Path, mounts_file: Path = PROC_MOUNTS) -> list[str]:
    """List active mount points at or below a directory.

    Args:
        path: Directory to inspect.
        mounts_file: Mount table to parse.

    Returns:
        Mount points, deepest first (the order they must be unmounted in).
    """
    base = str(path.resolve()).rstrip("/") or "/"
    found: list[str] = []
    try:
        lines = mounts_file.read_text().splitlines()
    except OSError as e:
        logger.warning("Cannot read mount table %s: %s", mounts_file, e)
        return found

    for line in lines:
        parts = line.split()
        if len(parts) < 2:
            continue
        mount_point = _unescape_mount_field(parts[1])
        if mount_point == base or mount_point.startswith(base + "/"):
            found.append(mount_point)
    return sorted(found, key=lambda p: p.count("/"), reverse=True)


def _unmount(executor: CommandExecutor, target: Path) -> ErrorContext | None:
    result = executor.run(Command.of("umount", target), cancellable=False)
    if result.success:
        return None
    logger.warning("Unmount of %s failed, retrying lazily", target)
    lazy = executor.run(Command.of("umount", "--lazy", target), cancellable=False)
    return lazy.error


def _detach_loop(executor: CommandExecutor, device: str) -> ErrorContext | None:
    result = executor.run(Command.of("losetup", "-d", device), cancellable=False)
    if result.success:
        logger.info("Detached %s", device)
    return result.error


def _last_line(output: str) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[-1] if lines else ""


_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape_mount_field(value: str) -> str:
    """Decode the octal escapes /proc/mounts uses for spaces and tabs."""
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), value)


__all__ = [
    "CHROOT_MOUNTS",
    "PROC_MOUNTS",
    "ManagedResource",
    "ResourceScope",
    "acquire_directory",
    "attach_loop_device",
    "enter_chroot",
    "get_mount_points_under",
    "mount",
    "partition_device",
]
