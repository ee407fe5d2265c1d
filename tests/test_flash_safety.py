"""Tests for flash/safety.py - write target validation."""

from functools import partial

import pytest

from isoflash.config import DEFAULT_SYSTEM_MOUNTS
from isoflash.errors import ValidationError
from isoflash.flash.safety import (
    Accepted,
    Rejected,
    SafetyValidator,
    get_mount_points,
    get_root_device,
    is_partition_path,
    is_system_mount,
    matches_device_grammar,
    normalize_device_path,
    partition_to_whole_device,
    stacked_device_names,
)
from isoflash.types import Device


def _validator(mounts=None, root_device="/dev/sda", **kwargs):
    mounts = mounts or {}
    return SafetyValidator(
        DEFAULT_SYSTEM_MOUNTS,
        system="Linux",
        mount_lookup=lambda path: list(mounts.get(path, [])),
        root_lookup=lambda: root_device,
        **kwargs,
    )


class TestIsPartitionPath:
    """Tests for is_partition_path function."""

    @pytest.mark.parametrize(
        "path",
        [
            "/dev/sda1",
            "/dev/sdb2",
            "/dev/mmcblk0p1",
            "/dev/nvme0n1p1",
            "/dev/loop0p1",
            "/dev/disk2s1",
            "/dev/rdisk2s1",
        ],
    )
    def test_partitions(self, path):
        """Partition paths should be detected."""
        assert is_partition_path(path) is True

    @pytest.mark.parametrize(
        "path",
        ["/dev/sda", "/dev/mmcblk0", "/dev/nvme0n1", "/dev/loop0", "/dev/disk2"],
    )
    def test_whole_devices(self, path):
        """Whole device paths should not be detected as partitions."""
        assert is_partition_path(path) is False


class TestPartitionToWholeDevice:
    """Tests for partition_to_whole_device function."""

    @pytest.mark.parametrize(
        ("partition", "whole"),
        [
            ("/dev/sda1", "/dev/sda"),
            ("/dev/sdb12", "/dev/sdb"),
            ("/dev/mmcblk0p1", "/dev/mmcblk0"),
            ("/dev/nvme0n1p2", "/dev/nvme0n1"),
            ("/dev/disk4s1", "/dev/disk4"),
            ("/dev/sdc", "/dev/sdc"),
        ],
    )
    def test_conversion(self, partition, whole):
        assert partition_to_whole_device(partition) == whole


class TestDeviceGrammar:
    """Tests for device path normalization and grammar."""

    def test_posix_paths(self):
        assert matches_device_grammar("/dev/sdb", "Linux")
        assert matches_device_grammar("/dev/disk4", "Darwin")
        assert not matches_device_grammar("sdb", "Linux")
        assert not matches_device_grammar("/dev/sdb; rm -rf /", "Linux")
        assert not matches_device_grammar("/home/user/disk.img", "Linux")

    def test_windows_drive_letter_normalized(self):
        """A bare drive letter becomes the device namespace form."""
        assert normalize_device_path("e:", "Windows") == "\\\\.\\E:"
        assert normalize_device_path("E:\\", "Windows") == "\\\\.\\E:"

    def test_windows_paths(self):
        assert matches_device_grammar("\\\\.\\E:", "Windows")
        assert matches_device_grammar("\\\\.\\PhysicalDrive1", "Windows")
        assert not matches_device_grammar("/dev/sdb", "Windows")
        assert not matches_device_grammar("E:", "Windows")

    def test_posix_normalization_strips_whitespace(self):
        assert normalize_device_path("  /dev/sdb\n", "Linux") == "/dev/sdb"


class TestIsSystemMount:
    """Tests for is_system_mount function."""

    def test_root_matches_exactly(self):
        """'/' only matches the root mount itself, not every path."""
        assert is_system_mount("/", DEFAULT_SYSTEM_MOUNTS)
        assert not is_system_mount("/media/usb", DEFAULT_SYSTEM_MOUNTS)
        assert not is_system_mount("/mnt/stick", DEFAULT_SYSTEM_MOUNTS)

    def test_descendants_match(self):
        """Mounts below a system mount count as system mounts."""
        assert is_system_mount("/boot/efi", DEFAULT_SYSTEM_MOUNTS)
        assert is_system_mount("/var/lib/docker", DEFAULT_SYSTEM_MOUNTS)
        assert is_system_mount("/home/", DEFAULT_SYSTEM_MOUNTS)

    def test_prefix_without_separator_does_not_match(self):
        assert not is_system_mount("/homework", DEFAULT_SYSTEM_MOUNTS)
        assert not is_system_mount("/optical", DEFAULT_SYSTEM_MOUNTS)

    def test_not_mounted(self):
        assert not is_system_mount(None, DEFAULT_SYSTEM_MOUNTS)
        assert not is_system_mount("", DEFAULT_SYSTEM_MOUNTS)


class TestMountTable:
    """Tests for get_mount_points and get_root_device."""

    MOUNTS = (
        "/dev/sda2 / ext4 rw,relatime 0 0\n"
        "/dev/sda1 /boot/efi vfat rw 0 0\n"
        "/dev/sdb1 /media/usb vfat rw 0 0\n"
        "/dev/sdbx /mnt/other ext4 rw 0 0\n"
        "/dev/mmcblk0p1 /media/sd vfat rw 0 0\n"
        "tmpfs /run tmpfs rw 0 0\n"
    )

    @pytest.fixture
    def mounts_file(self, tmp_path):
        def write(text):
            path = tmp_path / "mounts"
            path.write_text(text)
            return str(path)

        return write

    @pytest.fixture
    def sys_block(self, tmp_path):
        """Empty sysfs block tree; tests add the nodes they need."""
        root = tmp_path / "sys_block"
        root.mkdir()
        return root

    def test_mount_points_for_device(self, mounts_file, sys_block):
        """Partitions of the device are included, similarly-named devices are not."""
        table = mounts_file(self.MOUNTS)
        assert get_mount_points("/dev/sdb", table, str(sys_block)) == ["/media/usb"]
        assert get_mount_points("/dev/mmcblk0", table, str(sys_block)) == ["/media/sd"]
        assert get_mount_points("/dev/sdc", table, str(sys_block)) == []

    @pytest.mark.parametrize(
        ("device", "other"),
        [
            ("/dev/mmcblk1", "/dev/mmcblk10p1"),
            ("/dev/loop1", "/dev/loop10"),
            ("/dev/sda", "/dev/sdap1"),
            ("/dev/nvme0n1", "/dev/nvme0n10p1"),
        ],
    )
    def test_numbered_neighbours_not_matched(self, mounts_file, sys_block, device, other):
        table = mounts_file(f"{other} /media/other ext4 rw 0 0\n")
        assert get_mount_points(device, table, str(sys_block)) == []

    def test_whole_device_mount(self, mounts_file, sys_block):
        table = mounts_file("/dev/sdc /media/raw ext4 rw 0 0\n")
        assert get_mount_points("/dev/sdc", table, str(sys_block)) == ["/media/raw"]

    def test_lvm_volume_on_partition(self, mounts_file, sys_block):
        """A logical volume on one of the disk's partitions counts as its mount."""
        partition = sys_block / "sdb" / "sdb1"
        (partition / "holders" / "dm-0").mkdir(parents=True)
        (partition / "partition").write_text("1\n")
        (sys_block / "dm-0" / "dm").mkdir(parents=True)
        (sys_block / "dm-0" / "dm" / "name").write_text("vg-home\n")

        table = mounts_file("/dev/mapper/vg-home /home ext4 rw 0 0\n")
        assert get_mount_points("/dev/sdb", table, str(sys_block)) == ["/home"]
        names = stacked_device_names("sdb", str(sys_block))
        assert names == {"sdb", "sdb1", "dm-0", "vg-home"}

    def test_lvm_inside_luks(self, mounts_file, sys_block):
        """Stacks are followed through every level (crypt, then LVM)."""
        (sys_block / "sdb" / "holders" / "dm-0").mkdir(parents=True)
        (sys_block / "dm-0" / "holders" / "dm-1").mkdir(parents=True)
        (sys_block / "dm-0" / "dm").mkdir()
        (sys_block / "dm-0" / "dm" / "name").write_text("luks-usb\n")
        (sys_block / "dm-1" / "dm").mkdir(parents=True)
        (sys_block / "dm-1" / "dm" / "name").write_text("vg-root\n")

        table = mounts_file("/dev/mapper/vg-root / ext4 rw 0 0\n")
        assert get_mount_points("/dev/sdb", table, str(sys_block)) == ["/"]

    def test_unrelated_mapper_volume(self, mounts_file, sys_block):
        (sys_block / "sdb").mkdir()
        (sys_block / "dm-0" / "dm").mkdir(parents=True)
        (sys_block / "dm-0" / "dm" / "name").write_text("vg-home\n")

        table = mounts_file("/dev/mapper/vg-home /home ext4 rw 0 0\n")
        assert get_mount_points("/dev/sdb", table, str(sys_block)) == []

    def test_unreadable_mount_table(self, tmp_path):
        assert get_mount_points("/dev/sdb", str(tmp_path / "missing"), str(tmp_path)) == []

    def test_root_device(self, mounts_file):
        assert get_root_device(mounts_file(self.MOUNTS)) == "/dev/sda"

    def test_root_device_unknown(self, tmp_path):
        assert get_root_device(str(tmp_path / "missing")) is None

    def test_validator_rejects_disk_backing_home(self, mounts_file, sys_block):
        """The write-time check sees volumes stacked on the target's partitions."""
        partition = sys_block / "sdb" / "sdb1"
        (partition / "holders" / "dm-0").mkdir(parents=True)
        (partition / "partition").write_text("1\n")
        (sys_block / "dm-0" / "dm").mkdir(parents=True)
        (sys_block / "dm-0" / "dm" / "name").write_text("vg-home\n")
        table = mounts_file("/dev/mapper/vg-home /home ext4 rw 0 0\n")

        validator = SafetyValidator(
            DEFAULT_SYSTEM_MOUNTS,
            system="Linux",
            mount_lookup=partial(
                get_mount_points, mounts_file=table, sys_block=str(sys_block)
            ),
            root_lookup=lambda: "/dev/sda",
        )
        outcome = validator.validate("/dev/sdb")
        assert isinstance(outcome, Rejected)
        assert outcome.code == "SYSTEM_MOUNT"
        assert "/home" in outcome.reason


class TestSafetyValidator:
    """Tests for SafetyValidator class."""

    def test_accepts_removable_device(self):
        device = Device(path="/dev/sdb", display_name="USB")
        outcome = _validator().validate(device)
        assert outcome == Accepted(device)

    def test_accepts_raw_path(self):
        outcome = _validator().validate("/dev/sdb")
        assert isinstance(outcome, Accepted)
        assert outcome.device.path == "/dev/sdb"

    def test_rejects_invalid_path(self):
        outcome = _validator().validate("sdb")
        assert isinstance(outcome, Rejected)
        assert outcome.code == "INVALID_DEVICE_PATH"

    def test_rejects_partition(self):
        outcome = _validator().validate("/dev/sdb1")
        assert isinstance(outcome, Rejected)
        assert outcome.code == "PARTITION_NOT_ALLOWED"

    def test_rejects_root_device(self):
        outcome = _validator(root_device="/dev/sdb").validate("/dev/sdb")
        assert isinstance(outcome, Rejected)
        assert outcome.code == "SYSTEM_DEVICE"

    def test_rejects_system_mount(self):
        """A device with a partition under /boot is never a target."""
        validator = _validator(mounts={"/dev/sdb": ["/boot/efi"]})
        outcome = validator.validate("/dev/sdb")
        assert isinstance(outcome, Rejected)
        assert outcome.code == "SYSTEM_MOUNT"
        assert "/boot/efi" in outcome.reason

    def test_rejects_device_reporting_system_mount(self):
        device = Device(path="/dev/sdb", display_name="USB", current_mount_point="/")
        outcome = _validator().validate(device)
        assert isinstance(outcome, Rejected)
        assert outcome.code == "SYSTEM_MOUNT"

    def test_accepts_device_mounted_elsewhere(self):
        validator = _validator(mounts={"/dev/sdb": ["/media/usb"]})
        assert isinstance(validator.validate("/dev/sdb"), Accepted)

    def test_block_device_check(self):
        validator = _validator(block_device_check=lambda path: False)
        outcome = validator.validate("/dev/sdb")
        assert isinstance(outcome, Rejected)
        assert outcome.code == "NOT_BLOCK_DEVICE"

    def test_without_lookups(self):
        """Platforms without a mount table still enforce the grammar."""
        validator = SafetyValidator(system="Darwin", mount_lookup=None, root_lookup=None)
        assert isinstance(validator.validate("/dev/disk4"), Accepted)
        assert isinstance(validator.validate("/dev/disk4s1"), Rejected)

    def test_windows_drive_letter(self):
        validator = SafetyValidator(system="Windows", mount_lookup=None, root_lookup=None)
        outcome = validator.validate("E:")
        assert isinstance(outcome, Accepted)
        assert outcome.device.path == "\\\\.\\E:"

    def test_empty_denylist_refused(self):
        with pytest.raises(ValueError, match="must not be empty"):
            SafetyValidator([], system="Linux")

    def test_require_valid_raises(self):
        with pytest.raises(ValidationError) as exc_info:
            _validator().require_valid("/dev/sda1")
        assert exc_info.value.error_code == "PARTITION_NOT_ALLOWED"

    def test_require_valid_returns_device(self):
        assert _validator().require_valid("/dev/sdb").path == "/dev/sdb"

    def test_is_safe_mount(self):
        validator = _validator()
        assert validator.is_safe_mount("/media/usb")
        assert validator.is_safe_mount(None)
        assert not validator.is_safe_mount("/usr/local")


class TestCheckPath:
    """Tests for SafetyValidator.check_path."""

    def test_returns_normalized_path(self):
        assert _validator().check_path(" /dev/sdb ") == "/dev/sdb"

    def test_rejects_free_text(self):
        with pytest.raises(ValidationError) as exc_info:
            _validator().check_path("my usb stick")
        assert exc_info.value.error_code == "INVALID_DEVICE_PATH"
        assert "/dev/sdb" in exc_info.value.message

    def test_runs_no_lookups(self):
        """check_path must not touch the mount table or root lookup."""

        def _fail(*args):
            raise AssertionError("lookup called")

        validator = SafetyValidator(
            system="Linux", mount_lookup=_fail, root_lookup=_fail
        )
        assert validator.check_path("/dev/sdb") == "/dev/sdb"

    def test_windows_example(self):
        validator = SafetyValidator(system="Windows", mount_lookup=None, root_lookup=None)
        with pytest.raises(ValidationError, match=r"\\\\\.\\E:"):
            validator.check_path("/dev/sdb")
