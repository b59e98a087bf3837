"""
usbmirror package
- Waits for a target removable volume and mirrors a source folder onto it.
"""
import logging

from usbmirror.config import BackupConfig
from usbmirror.watcher import AttachWatcher

__all__ = ["config", "mirror", "utils", "watcher", "create_watcher"]
__version__ = "0.1.0"


def create_watcher(config: BackupConfig) -> AttachWatcher:
    logging.info(
        "Configuration loaded: source='%s', destination='%s', target volume='%s', mount root='%s'",
        config.source_root,
        config.destination_root,
        config.target_volume_id,
        config.mount_root or "none (partition polling only)",
    )
    return AttachWatcher(config)
