"""Control-plane configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Every path the control plane touches on the host lives here so that
    components can be constructed against a substitute filesystem layout.
    """

    # Domain that hosts backends and the device models
    control_domid: int = 0

    # Hotplug synchronisation
    hotplug_root: str = "/xapi"
    hotplug_timeout: float = 1200.0  # seconds
    vif_script: str = "/etc/xensource/scripts/vif"

    # Device model (qemu-dm)
    dm_path: str = "/opt/xensource/libexec/qemu-dm-wrapper"
    dm_ready_timeout: float = 1200.0  # seconds
    dm_shutdown_timeout: float = 1200.0  # seconds
    dm_poll_interval: float = 0.03  # seconds
    dm_log_dir: str = "/tmp"
    dm_restore_dir: str = "/tmp"
    dm_chroot_root: str = "/var/xen/qemu"
    acpi_battery_path: str = "/proc/acpi/battery"
    proc_root: str = "/proc"

    # Paravirtual console
    vncterm_wrapper: str = "/opt/xensource/libexec/vncterm-wrapper"
    vncterm_timeout: float = 1200.0  # seconds

    # PCI passthrough
    pci_sysfs_root: str = "/sys/bus/pci"
    pciback_driver: str = "pciback"
    pci_flr_script: str = "/opt/xensource/libexec/pci-flr"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    class Config:
        env_prefix = "DEVCTL_"


settings = Settings()
