"""
BLE Device Scanner

Lists nearby Bluetooth Low Energy devices and flags the ones that look like a
Linak desk, so the address can be pinned with DESK_ADDRESS.
"""

from dataclasses import dataclass, field

from bleak import BleakScanner
from rich.console import Console
from rich.table import Table

from desk_control.protocol import UUID_CONTROL_SERVICE

console = Console()


@dataclass
class ScannedDevice:
    """One advertisement seen during a scan."""

    name: str | None
    address: str
    rssi: int
    manufacturer_ids: list[int] = field(default_factory=list)
    service_uuids: list[str] = field(default_factory=list)

    @property
    def advertises_control_service(self) -> bool:
        return UUID_CONTROL_SERVICE in (u.lower() for u in self.service_uuids)

    @property
    def is_desk(self) -> bool:
        """Linak desks advertise the control service; older firmware only shows up by name."""
        if self.advertises_control_service:
            return True
        return bool(self.name and "desk" in self.name.lower())


async def scan_devices(timeout: float = 10.0, desks_only: bool = False) -> list[ScannedDevice]:
    """
    Scan for BLE devices.

    Args:
        timeout: Scan duration in seconds
        desks_only: Only keep devices that look like desks

    Returns:
        Devices sorted by signal strength, strongest first
    """
    discovered = await BleakScanner.discover(timeout=timeout, return_adv=True)

    devices = [
        ScannedDevice(
            name=device.name or adv.local_name,
            address=address,
            rssi=adv.rssi,
            manufacturer_ids=sorted(adv.manufacturer_data),
            service_uuids=list(adv.service_uuids),
        )
        for address, (device, adv) in discovered.items()
    ]
    if desks_only:
        devices = [d for d in devices if d.is_desk]

    return sorted(devices, key=lambda d: d.rssi, reverse=True)


def print_devices(devices: list[ScannedDevice]) -> None:
    """Render discovered devices as a table."""
    if not devices:
        console.print("No devices found.")
        return

    table = Table(show_lines=False)
    table.add_column("Name", max_width=24, overflow="ellipsis")
    table.add_column("Address")
    table.add_column("RSSI", justify="right")
    table.add_column("Notes")

    for device in devices:
        notes = []
        if device.advertises_control_service:
            notes.append("[green]LINAK[/green]")
        elif device.is_desk:
            notes.append("[yellow]DESK?[/yellow]")
        notes.extend(f"MFG:0x{m:04X}" for m in device.manufacturer_ids)

        table.add_row(device.name or "(unknown)", device.address, f"{device.rssi} dBm", ", ".join(notes))

    console.print(table)
