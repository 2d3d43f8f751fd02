"""Board hardware access.

Board targets boot the hypervisor on a physical board over a serial console
and TFTP. Before such a target runs, HardwareProbe checks that a serial device
is reachable; without one the target is skipped rather than failed.

The U-Boot runner (`cargo xtask uboot`) reads its device settings from
.uboot.toml in the checkout. When that file is missing the operator is asked
for the serial device, baud rate and DTB path, and the answers are saved.
"""

import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

import serial.tools.list_ports
import tomlkit
from tomlkit.exceptions import TOMLKitError

from hvtest.config.models import TestTarget
from hvtest.errors import HardwareUnavailable
from hvtest.output import get_console, log

logger = logging.getLogger(__name__)

UBOOT_CONFIG_NAME = ".uboot.toml"
DEFAULT_SERIAL = "/dev/ttyUSB0"
DEFAULT_BAUD_RATE = "115200"
DEFAULT_DTB_FILE = "board/orangepi-5-plus.dtb"

# Description fragments of common USB-UART bridges on development boards.
_UART_HINTS = ("cp210", "ch340", "ch341", "ftdi", "pl2303", "usb-serial", "uart")


def list_serial_ports() -> List[str]:
    """Return serial device paths, likely board consoles first."""
    try:
        ports = list(serial.tools.list_ports.comports())
    except OSError as e:
        logger.debug(f"Serial port enumeration failed: {e}")
        return []

    def rank(port) -> int:
        text = f"{port.description or ''} {port.manufacturer or ''}".lower()
        return 0 if any(hint in text for hint in _UART_HINTS) else 1

    return [port.device for port in sorted(ports, key=rank)]


def _read_uboot_config(path: Path) -> dict:
    try:
        return tomlkit.parse(path.read_text(encoding="utf-8")).unwrap()
    except (OSError, TOMLKitError) as e:
        logger.warning(f"Cannot read {path}: {e}")
        return {}


class HardwareProbe:
    """Decides whether a board target can reach its hardware.

    A board is considered reachable when the serial device named in its
    existing .uboot.toml exists, or when any serial port is present at all
    (the operator picks it during provisioning).
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def check(self, target: TestTarget, checkout: Path) -> None:
        """Raise HardwareUnavailable if a board target cannot run here.

        Args:
            target: Target about to run (non-board targets always pass)
            checkout: Target checkout directory (may not exist yet)
        """
        if not target.is_board:
            return
        if not self.enabled:
            raise HardwareUnavailable("hardware tests disabled (--no-hardware)")

        uboot_config = checkout / UBOOT_CONFIG_NAME
        if uboot_config.is_file():
            serial_path = str(_read_uboot_config(uboot_config).get("serial") or "")
            if serial_path and Path(serial_path).exists():
                return

        ports = list_serial_ports()
        if not ports:
            raise HardwareUnavailable(f"no serial device found for board {target.board or target.name}")
        logger.debug(f"Serial ports available for {target.name}: {ports}")


def provision_uboot_config(
    checkout: Path,
    template: Optional[Path] = None,
    prompt: Optional[Callable[[str], str]] = None,
    interactive: Optional[bool] = None,
) -> Path:
    """Make sure the checkout has a .uboot.toml, asking the operator if needed.

    Args:
        checkout: Target checkout directory
        template: Optional U-Boot config from the target repository whose
            values become the prompt defaults
        prompt: Input function (defaults to the console's input)
        interactive: Whether prompting is possible (defaults to stdin being a TTY)

    Returns:
        Path to .uboot.toml

    Raises:
        HardwareUnavailable: If the file is missing and nobody can be asked
    """
    path = checkout / UBOOT_CONFIG_NAME
    if path.is_file():
        log(f"  Using existing {UBOOT_CONFIG_NAME}")
        return path

    if interactive is None:
        interactive = sys.stdin.isatty()
    if not interactive:
        raise HardwareUnavailable(f"{UBOOT_CONFIG_NAME} missing and no terminal to ask for board settings")
    if prompt is None:
        prompt = get_console().input

    defaults = _read_uboot_config(template) if template is not None and template.is_file() else {}
    ports = list_serial_ports()
    serial_default = str(defaults.get("serial") or (ports[0] if ports else DEFAULT_SERIAL))
    baud_default = str(defaults.get("baud_rate") or DEFAULT_BAUD_RATE)
    dtb_default = str(defaults.get("dtb_file") or DEFAULT_DTB_FILE)

    log("  ======== U-Boot board settings ========")
    serial_path = prompt(f"Serial device [{serial_default}]: ").strip() or serial_default
    baud_rate = prompt(f"Baud rate [{baud_default}]: ").strip() or baud_default
    dtb_file = prompt(f"DTB file [{dtb_default}]: ").strip() or dtb_default

    doc = tomlkit.document()
    doc["serial"] = serial_path
    # The U-Boot runner expects the baud rate as a string.
    doc["baud_rate"] = baud_rate
    doc["success_regex"] = tomlkit.array()
    doc["fail_regex"] = tomlkit.array()
    doc["dtb_file"] = dtb_file
    path.write_text(tomlkit.dumps(doc), encoding="utf-8")

    log(f"  U-Boot settings saved to {path}")
    log(f"  - serial: {serial_path}")
    log(f"  - baud rate: {baud_rate}")
    log(f"  - DTB file: {dtb_file}")
    return path
