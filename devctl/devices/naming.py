"""Codec between disk names and device numbers.

Three naming families are understood:

* ``sd[a-p]N``: SCSI disks, major 8, 16 minors per letter
* ``xvd[a-p]N``: paravirtual disks, major 202, 16 minors per letter
* ``hd[a-t]N``: IDE disks, two disks per major from ``IDE_MAJORS``, 64
  minors per disk

The trailing number is the partition and is omitted when zero. A device
number is ``256 * major + minor``; it is the index used in store paths, so
it must be stable for a given name.
"""

from __future__ import annotations

import os
import re

from devctl.errors import DeviceUnrecognizedError

SCSI_MAJOR = 8
XVD_MAJOR = 202
IDE_MAJORS = (3, 22, 33, 34, 56, 57, 88, 89, 90, 91)

_SCSI_RE = re.compile(r"sd([a-p])(\d*)")
_XVD_RE = re.compile(r"xvd([a-p])(\d*)")
_IDE_RE = re.compile(r"hd([a-t])(\d*)")


def _letter_index(letter: str) -> int:
    return ord(letter) - ord("a")


def _partition(digits: str) -> int:
    return int(digits) if digits else 0


def _suffix(partition: int) -> str:
    return str(partition) if partition else ""


def _major_minor_from_node(name: str) -> tuple[int, int]:
    path = name if os.path.isabs(name) else os.path.join("/dev", name)
    try:
        rdev = os.stat(path).st_rdev
    except OSError:
        raise DeviceUnrecognizedError(name) from None
    return os.major(rdev), os.minor(rdev)


def device_major_minor(name: str) -> tuple[int, int]:
    """Return ``(major, minor)`` for a device name.

    Names outside the known families are looked up on the filesystem.
    """
    match = _SCSI_RE.fullmatch(name)
    if match:
        return SCSI_MAJOR, 16 * _letter_index(match.group(1)) + _partition(match.group(2))

    match = _XVD_RE.fullmatch(name)
    if match:
        return XVD_MAJOR, 16 * _letter_index(match.group(1)) + _partition(match.group(2))

    match = _IDE_RE.fullmatch(name)
    if match:
        n = _letter_index(match.group(1))
        return IDE_MAJORS[n // 2], 64 * (n % 2) + _partition(match.group(2))

    return _major_minor_from_node(name)


def major_minor_to_device(major: int, minor: int) -> str:
    """Return the device name for ``(major, minor)``."""
    if major == SCSI_MAJOR:
        return f"sd{chr(ord('a') + minor // 16)}{_suffix(minor % 16)}"
    if major == XVD_MAJOR:
        return f"xvd{chr(ord('a') + minor // 16)}{_suffix(minor % 16)}"
    if major in IDE_MAJORS:
        n = IDE_MAJORS.index(major)
        second, partition = (1, minor - 64) if minor >= 64 else (0, minor)
        return f"hd{chr(ord('a') + n * 2 + second)}{_suffix(partition)}"
    raise DeviceUnrecognizedError(f"({major}, {minor})")


def device_number(name: str) -> int:
    """Return the device number for a name, or for a numeric string."""
    try:
        major, minor = device_major_minor(name)
    except DeviceUnrecognizedError:
        try:
            return int(name)
        except ValueError:
            raise DeviceUnrecognizedError(name) from None
    return 256 * major + minor


def device_name(number: int) -> str:
    """Inverse of ``device_number`` for numbers within a known family."""
    return major_minor_to_device(number // 256, number % 256)


def string_of_major_minor(name: str) -> str:
    """``"major:minor"`` in hex, the form block backends expect."""
    major, minor = device_major_minor(name)
    return f"{major:x}:{minor:x}"
