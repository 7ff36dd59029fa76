"""Device-model configuration schemas.

These Pydantic models describe what the device model for one guest should
emulate. They are turned into a command line by ``devctl.devicemodel``.
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class DeviceModelState(str, Enum):
    """Lifecycle of a supervised device-model process."""
    NOT_STARTED = "not-started"
    STARTING = "starting"
    READY = "ready"
    AWAITING_VNC = "awaiting-vnc"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


# --- Display ---

class NoDisplay(BaseModel):
    """No graphical console."""
    type: Literal["none"] = "none"


class VncDisplay(BaseModel):
    """VNC console, on a fixed port or the first free one."""
    type: Literal["vnc"] = "vnc"
    auto_allocate: bool = True
    bind_address: str = ""  # empty binds every address
    port: int = Field(0, ge=0, description="Used only when auto_allocate is false")
    keymap: str = "en-us"


class SdlDisplay(BaseModel):
    """Local SDL window on an X11 display."""
    type: Literal["sdl"] = "sdl"
    x11_display: str = ""


Display = Annotated[Union[NoDisplay, VncDisplay, SdlDisplay], Field(discriminator="type")]


# --- Device model ---

class NicSpec(BaseModel):
    """An emulated network card."""
    mac: str
    bridge: str
    model: str | None = None  # rtl8139 when unset
    wireless: bool = False


class DeviceModelInfo(BaseModel):
    """Everything the device model of one guest is started with."""
    hvm: bool = True
    memory: int = Field(..., gt=0, description="Guest memory in KiB")
    boot: str = "cd"
    serial: str = "pty"
    vcpus: int = Field(1, gt=0)
    usb: list[str] = Field(default_factory=list)  # e.g. ["tablet"]
    nics: list[NicSpec] = Field(default_factory=list)
    acpi: bool = False
    display: Display = Field(default_factory=NoDisplay)
    pci_emulations: list[str] = Field(default_factory=list)
    sound: str | None = None
    power_mgmt: int = 0
    oem_features: int = 0
    inject_sci: int = 0
    videoram: int = Field(4, gt=0, description="Video RAM in MiB")
    # Passed through as "-<flag> [value]", in order
    extras: list[tuple[str, str | None]] = Field(default_factory=list)
