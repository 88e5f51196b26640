"""Typed command descriptors.

Commands are a program plus an argument list handed straight to the process
spawning primitive, so no shell ever re-parses them.
"""

from __future__ import annotations

import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class Command:
    """An external command.

    Attributes:
        program: Executable name or path.
        args: Arguments passed verbatim.
        cwd: Working directory for the child.
        env: Variables added to the inherited environment.
        input: Text written to the child's stdin.
        capture: Whether the combined output is returned to the caller.
    """

    program: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    input: str | None = None
    capture: bool = False

    @classmethod
    def of(cls, program: str, *args: object, **options: object) -> Command:
        """Build a command, converting arguments (e.g. Paths) to strings."""
        return cls(program, tuple(str(a) for a in args), **options)  # type: ignore[arg-type]

    @classmethod
    def chroot(cls, root: Path, program: str, *args: object, **options: object) -> Command:
        """Build a command that runs inside the given root filesystem."""
        return cls.of("chroot", root, program, *args, **options)

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    @property
    def is_blank(self) -> bool:
        return not self.program.strip()

    def display(self) -> str:
        """Shell-quoted rendering for logs and error contexts."""
        return shlex.join(self.argv)

    def __str__(self) -> str:
        return self.display()


def make_command(
    target_arch: str,
    cross_compile: str,
    *targets: str,
    cwd: Path,
    jobs: int | None = None,
    extra: tuple[str, ...] = (),
) -> Command:
    """Compose a cross-compiling ``make`` invocation.

    Args:
        target_arch: Kernel ARCH value.
        cross_compile: Toolchain prefix.
        *targets: Make targets.
        cwd: Source tree.
        jobs: Optional -j parallelism.
        extra: Additional VAR=value arguments.

    Returns:
        Command with ARCH and CROSS_COMPILE passed on the command line.
    """
    args: list[str] = [f"ARCH={target_arch}", f"CROSS_COMPILE={cross_compile}"]
    if jobs is not None:
        args.append(f"-j{jobs}")
    args.extend(extra)
    args.extend(targets)
    return Command("make", tuple(args), cwd=cwd)


__all__ = ["Command", "make_command"]
