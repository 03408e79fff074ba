"""SwitchBot battery circulator fan bridge: BLE, cloud, and webhook state sync."""

__all__ = ["config", "logging", "state", "normalizers", "dispatcher", "controller"]
__version__ = "1.0.0"
