"""Tests for scoped resource lifecycle.

Uses FakeExecutor so no loop devices or mounts are touched.
"""

from pathlib import Path

import pytest

from opi5_builder.errors import BuildError, make_error
from opi5_builder.resources import (
    CHROOT_MOUNTS,
    ManagedResource,
    ResourceScope,
    acquire_directory,
    attach_loop_device,
    enter_chroot,
    get_mount_points_under,
    mount,
    partition_device,
)
from opi5_builder.types import ErrorKind, ResourceKind
from tests.conftest import FakeExecutor


class TestManagedResource:
    """Tests for ManagedResource.release."""

    def test_release_once(self) -> None:
        calls: list[int] = []
        resource = ManagedResource(ResourceKind.MOUNT, "/mnt", _release_fn=lambda: calls.append(1))

        resource.release()
        resource.release()

        assert resource.released
        assert calls == [1]

    def test_release_without_fn(self) -> None:
        resource = ManagedResource(ResourceKind.CHROOT, "/rootfs")
        assert resource.release() is None
        assert resource.released


class TestAcquireDirectory:
    """Tests for acquire_directory."""

    def test_temporary_directory_removed(self, tmp_path: Path) -> None:
        target = tmp_path / "mnt"
        with ResourceScope() as scope:
            acquire_directory(scope, target, temporary=True)
            assert target.is_dir()
        assert not target.exists()

    def test_existing_directory_kept(self, tmp_path: Path) -> None:
        target = tmp_path / "mnt"
        target.mkdir()
        with ResourceScope() as scope:
            acquire_directory(scope, target, temporary=True)
        assert target.is_dir()

    def test_non_empty_directory_left_in_place(self, tmp_path: Path) -> None:
        target = tmp_path / "mnt"
        with ResourceScope() as scope:
            acquire_directory(scope, target, temporary=True)
            (target / "file").write_text("x")
        assert target.is_dir()
        assert scope.release_errors == []

    def test_create_failure(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(BuildError) as exc_info:
            with ResourceScope() as scope:
                acquire_directory(scope, blocker / "sub")
        assert exc_info.value.kind is ErrorKind.RESOURCE_UNAVAILABLE


class TestLoopDevice:
    """Tests for attach_loop_device."""

    def test_attach_and_detach(self, executor: FakeExecutor, tmp_path: Path) -> None:
        image = tmp_path / "disk.img"
        with ResourceScope() as scope:
            loop = attach_loop_device(scope, executor, image)
            assert loop.handle == "/dev/loop7"
            assert partition_device(loop, 5) == "/dev/loop7p5"

        assert executor.lines == [
            f"losetup --find --show --partscan {image}",
            "udevadm settle",
            "losetup -d /dev/loop7",
        ]
        assert executor.cancellable == [False, False, False]

    def test_attach_failure_registers_nothing(self, tmp_path: Path) -> None:
        executor = FakeExecutor(outputs={"losetup": ""}, failures={"losetup --find"})
        with pytest.raises(BuildError) as exc_info:
            with ResourceScope() as scope:
                attach_loop_device(scope, executor, tmp_path / "disk.img")
        assert exc_info.value.kind is ErrorKind.PROCESS_EXITED_NON_ZERO
        assert scope.resources == []

    def test_no_device_reported(self, tmp_path: Path) -> None:
        executor = FakeExecutor(outputs={"losetup": ""})
        with pytest.raises(BuildError) as exc_info:
            with ResourceScope() as scope:
                attach_loop_device(scope, executor, tmp_path / "disk.img")
        assert exc_info.value.kind is ErrorKind.RESOURCE_UNAVAILABLE


class TestMount:
    """Tests for mount and reverse-order release."""

    def test_reverse_release_order(self, executor: FakeExecutor, tmp_path: Path) -> None:
        root = tmp_path / "mnt"
        with ResourceScope() as scope:
            loop = attach_loop_device(scope, executor, tmp_path / "disk.img")
            mount(scope, executor, partition_device(loop, 5), root, backing=loop)
            mount(scope, executor, partition_device(loop, 4), root / "boot", backing=loop)
            acquired = len(executor.commands)

        assert executor.lines[acquired:] == [
            f"umount {root / 'boot'}",
            f"umount {root}",
            "losetup -d /dev/loop7",
        ]

    def test_release_on_failure(self, executor: FakeExecutor, tmp_path: Path) -> None:
        root = tmp_path / "mnt"
        with pytest.raises(BuildError):
            with ResourceScope() as scope:
                loop = attach_loop_device(scope, executor, tmp_path / "disk.img")
                mount(scope, executor, partition_device(loop, 5), root, backing=loop)
                raise make_error(ErrorKind.PROCESS_EXITED_NON_ZERO, "rsync failed")

        assert executor.lines[-2:] == [f"umount {root}", "losetup -d /dev/loop7"]
        assert scope.active() == []

    def test_options_and_fstype(self, executor: FakeExecutor, tmp_path: Path) -> None:
        with ResourceScope() as scope:
            mount(scope, executor, "/dev", tmp_path / "dev", options=("bind",))
            mount(scope, executor, "proc", tmp_path / "proc", fstype="proc")
        assert executor.lines[0] == f"mount -o bind /dev {tmp_path / 'dev'}"
        assert executor.lines[1] == f"mount -t proc proc {tmp_path / 'proc'}"

    def test_mount_requires_attached_backing(self, executor: FakeExecutor, tmp_path: Path) -> None:
        with ResourceScope() as scope:
            loop = attach_loop_device(scope, executor, tmp_path / "disk.img")
            loop.release()
            count = len(executor.commands)
            with pytest.raises(BuildError) as exc_info:
                mount(scope, executor, partition_device(loop, 5), tmp_path / "mnt", backing=loop)
            assert exc_info.value.kind is ErrorKind.PRECONDITION_MISSING
            assert len(executor.commands) == count

    def test_lazy_unmount_fallback(self, tmp_path: Path) -> None:
        target = tmp_path / "mnt"
        executor = FakeExecutor(failures={f"umount {target}", "umount --lazy"})
        with ResourceScope() as scope:
            mount(scope, executor, "/dev/sda1", target)
        assert executor.lines[-2:] == [f"umount {target}", f"umount --lazy {target}"]
        assert len(scope.release_errors) == 1
        assert scope.release_errors[0].kind is ErrorKind.PROCESS_EXITED_NON_ZERO


class TestChroot:
    """Tests for enter_chroot."""

    def test_mounts_and_release(self, executor: FakeExecutor, tmp_path: Path) -> None:
        root = tmp_path / "rootfs"
        root.mkdir()
        with ResourceScope() as scope:
            chroot = enter_chroot(scope, executor, root)
            assert chroot.kind is ResourceKind.CHROOT
            acquired = len(executor.commands)

        assert acquired == len(CHROOT_MOUNTS)
        assert executor.lines[acquired:] == [
            f"umount {root / 'dev/pts'}",
            f"umount {root / 'dev'}",
            f"umount {root / 'sys'}",
            f"umount {root / 'proc'}",
        ]

    def test_missing_root(self, executor: FakeExecutor, tmp_path: Path) -> None:
        with pytest.raises(BuildError) as exc_info:
            with ResourceScope() as scope:
                enter_chroot(scope, executor, tmp_path / "missing")
        assert exc_info.value.kind is ErrorKind.PRECONDITION_MISSING
        assert executor.commands == []


class TestMountTable:
    """Tests for get_mount_points_under."""

    def test_parses_and_orders(self, tmp_path: Path) -> None:
        base = tmp_path.resolve() / "rootfs"
        mounts = tmp_path / "mounts"
        mounts.write_text(
            "/dev/sda1 / ext4 rw 0 0\n"
            f"proc {base}/proc proc rw 0 0\n"
            f"devpts {base}/dev/pts devpts rw 0 0\n"
            f"/dev/sdb1 {tmp_path.resolve()}/rootfs-other ext4 rw 0 0\n"
            f"/dev/sdc1 {base}/my\\040dir ext4 rw 0 0\n"
        )

        found = get_mount_points_under(base, mounts)

        assert found[0] == f"{base}/dev/pts"
        assert set(found) == {f"{base}/proc", f"{base}/dev/pts", f"{base}/my dir"}

    def test_unreadable_table(self, tmp_path: Path) -> None:
        assert get_mount_points_under(tmp_path, tmp_path / "missing") == []
