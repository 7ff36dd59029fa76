from __future__ import annotations

from devctl.config import Settings
from devctl.version import __version__, get_commit


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("DEVCTL_CONTROL_DOMID", "3")
    monkeypatch.setenv("DEVCTL_HOTPLUG_TIMEOUT", "5")
    monkeypatch.setenv("DEVCTL_PCIBACK_DRIVER", "xen-pciback")

    settings = Settings()
    assert settings.control_domid == 3
    assert settings.hotplug_timeout == 5.0
    assert settings.pciback_driver == "xen-pciback"
    assert settings.dm_poll_interval == 0.03


def test_version_from_file():
    assert __version__ == "0.3.0"


def test_commit_from_environment(monkeypatch):
    monkeypatch.setenv("DEVCTL_GIT_SHA", "abc123")
    assert get_commit() == "abc123"
