from __future__ import annotations

import logging
import os
import threading
from pathlib import Path, PurePosixPath
from queue import Empty, Queue
from typing import Callable, Dict, Iterable, List, Optional

import psutil
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from usbmirror.config import BackupConfig
from usbmirror.mirror import (
    BackupRun,
    CopyCancelled,
    MirrorError,
    ProgressSample,
    SourceUnreachableError,
    copy_tree,
    count_files,
    format_progress,
    prepare_destination,
    resolve_source_root,
)
from usbmirror.utils import DEFAULT_EXCLUDED_DIRS, format_size, volume_matches

BANNER = "*" * 66
DEFAULT_POLL_SECONDS = 1.0


def partition_volume_id(partition) -> str:
    """Volume id for a psutil partition entry.

    Drive roots give their letter (``E:\\`` -> ``E``); anything else gives the
    name of its mount folder (``/media/alice/BACKUP`` -> ``BACKUP``). The
    filesystem root gives an empty string.
    """
    mountpoint = (partition.mountpoint or "").rstrip("/\\")
    if len(mountpoint) == 2 and mountpoint.endswith(":"):
        return partition.device.rstrip(":\\") or mountpoint[0]
    return PurePosixPath(mountpoint.replace("\\", "/")).name


class PartitionPoller:
    """Reports partitions that show up between two psutil.disk_partitions() calls.

    The first poll only records what is already mounted. A partition that is
    unmounted and mounted again is reported again.
    """

    def __init__(
        self,
        on_attach: Callable[[str], None],
        stop_event: threading.Event,
        interval: float = DEFAULT_POLL_SECONDS,
    ):
        self.on_attach = on_attach
        self.interval = interval
        self._stop_event = stop_event
        self._known: Optional[Dict[str, str]] = None
        self._thread: Optional[threading.Thread] = None

    def snapshot(self) -> Dict[str, str]:
        volumes = {}
        for partition in psutil.disk_partitions(all=False):
            volume_id = partition_volume_id(partition)
            if volume_id:
                volumes[partition.mountpoint] = volume_id
        return volumes

    def poll(self) -> List[str]:
        current = self.snapshot()
        known = current if self._known is None else self._known
        self._known = current
        attached = [current[mountpoint] for mountpoint in sorted(set(current) - set(known))]
        for volume_id in attached:
            logging.debug("Partition mounted: %s", volume_id)
            self.on_attach(volume_id)
        return attached

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.poll()
        self._thread = threading.Thread(target=self._loop, name="usbmirror-partitions", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.poll()
            except Exception:
                logging.exception("Failed to poll mounted partitions.")

    def join(self, timeout: float = 5.0) -> None:
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)


class _VolumeEventHandler(FileSystemEventHandler):
    """Turns folders appearing under the mount root into attach events."""

    def __init__(self, watcher: "AttachWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event):
        self._handle_event(event.src_path, event.is_directory)

    def on_moved(self, event):
        target_path = getattr(event, "dest_path", None) or event.src_path
        self._handle_event(target_path, event.is_directory)

    def _handle_event(self, path, is_directory: bool):
        if not is_directory:
            return
        volume_id = Path(os.fsdecode(path)).name
        if volume_id:
            self.watcher.queue_attach_event(volume_id)


class BackupSequencer:
    """Countdown, resync, count and copy for one matched attach event."""

    def __init__(
        self,
        config: BackupConfig,
        stop_event: threading.Event,
        exclusions: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
        tick_seconds: float = 1.0,
    ):
        self.config = config
        self.exclusions = tuple(exclusions)
        self.tick_seconds = tick_seconds
        self._stop_event = stop_event

    def countdown(self) -> bool:
        seconds = self.config.countdown_seconds
        if seconds > 0:
            logging.info("Starting backup countdown: %s seconds.", seconds)
        for remaining in range(seconds, 0, -1):
            logging.info("Time until copy starts: %s...", remaining)
            if self._stop_event.wait(self.tick_seconds):
                return False
        if self._stop_event.is_set():
            return False
        logging.info("Countdown complete. Proceeding with file operations.")
        return True

    def run(self, volume_id: str) -> Optional[BackupRun]:
        if not self.countdown():
            logging.warning("Stop requested during countdown. Backup for %s skipped.", volume_id)
            return None

        run = BackupRun()
        try:
            self._mirror(run)
        except CopyCancelled:
            logging.warning(
                "Stop requested while copying. Backup abandoned after %s file(s).",
                run.copied_files,
            )
            run.fail("stopped before completion")
        except MirrorError as exc:
            logging.error("%s Aborting backup.", exc)
            run.fail(str(exc))
        except Exception as exc:
            logging.exception("Backup process failed during file copying.")
            run.fail(str(exc) or exc.__class__.__name__)
        return run

    def _mirror(self, run: BackupRun) -> None:
        config = self.config

        logging.info("Resetting destination folder %s.", config.destination_root)
        prepare_destination(config.destination_root)

        source_root = resolve_source_root(config.source_root)
        if not source_root.is_dir():
            raise SourceUnreachableError(
                f"Source root ({source_root}) is not accessible. Cannot start backup."
            )

        run.total_files = count_files(config.source_root, self.exclusions)
        logging.info(
            "Found %s files to copy (excluding: %s). Starting backup process.",
            run.total_files,
            ", ".join(self.exclusions),
        )

        report = copy_tree(
            config.source_root,
            config.destination_root,
            run,
            on_progress=self._on_progress,
            exclusions=self.exclusions,
            cancel_event=self._stop_event,
        )

        if report.skipped:
            logging.warning("Skipped %s link(s) or special file(s).", len(report.skipped))
        if report.ok:
            logging.info(
                "Backup process completed successfully: %s file(s), %s.",
                report.copied_files,
                format_size(report.copied_bytes),
            )
        else:
            logging.warning(
                "Backup process completed with %s failure(s): %s file(s), %s copied.",
                len(report.failures),
                report.copied_files,
                format_size(report.copied_bytes),
            )
        run.succeed()

    def _on_progress(self, sample: ProgressSample) -> None:
        logging.info("%s", format_progress(sample))


class AttachWatcher:
    """Listens for volume attach events and mirrors when the target shows up.

    Two producers feed the event queue: a partition poller (drive letters and
    mount folders anywhere) and, when a mount root is configured, a watchdog
    observer on that folder. Producers only enqueue volume identifiers. The
    thread calling run() or process_next() owns every backup run, so runs
    never overlap; matching events that arrive during a run are coalesced
    into it.
    """

    def __init__(
        self,
        config: BackupConfig,
        sequencer: Optional[BackupSequencer] = None,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ):
        self.config = config
        self.state = "IDLE"
        self.last_run: Optional[BackupRun] = None
        self._stop_event = threading.Event()
        self._event_queue: Queue = Queue()
        self._observer: Optional[BaseObserver] = None
        self._poller = PartitionPoller(self.queue_attach_event, self._stop_event, interval=poll_seconds)
        self._sequencer = sequencer or BackupSequencer(config, self._stop_event)

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def queue_attach_event(self, volume_id: str) -> None:
        try:
            self._event_queue.put_nowait(volume_id)
        except Exception:
            logging.exception("Failed to queue attach event: %s", volume_id)

    def _start_poller(self) -> bool:
        try:
            self._poller.start()
        except Exception:
            logging.exception("Failed to start partition polling.")
            return False
        return True

    def _start_observer(self) -> bool:
        mount_root = self.config.mount_root
        if mount_root is None:
            return False
        try:
            if not mount_root.is_dir():
                raise FileNotFoundError(f"Mount root does not exist: {mount_root}")
            observer = Observer()
            observer.schedule(_VolumeEventHandler(self), str(mount_root), recursive=False)
            observer.start()
        except Exception:
            logging.exception("Failed to watch mount root %s.", mount_root)
            return False
        self._observer = observer
        return True

    def start(self) -> bool:
        if self.state == "ARMED":
            return True
        if self._stop_event.is_set():
            logging.warning("Volume watcher was stopped and cannot be restarted.")
            return False

        polling = self._start_poller()
        watching = self._start_observer()
        if not (polling or watching):
            logging.error("No volume attach channel could be started. Watcher stays idle.")
            self.state = "IDLE"
            return False

        self.state = "ARMED"
        logging.info(
            "Volume watching started (partition polling: %s, mount root: %s). Waiting for volume %s...",
            "on" if polling else "off",
            self.config.mount_root if watching else "off",
            self.config.target_volume_id,
        )
        return True

    def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=5)
            logging.info("Volume watching stopped and resources released.")
        except Exception:
            logging.exception("Failed to stop observer cleanly.")

    def _release_channels(self) -> None:
        self._stop_observer()
        self._poller.join()

    def _log_not_target(self, volume_id: str) -> None:
        logging.info(
            "Volume attached, but not the target. Detected: %s, Target: %s",
            volume_id,
            self.config.target_volume_id,
        )

    def _coalesce_pending(self) -> None:
        while True:
            try:
                volume_id = self._event_queue.get_nowait()
            except Empty:
                break
            if volume_matches(volume_id, self.config.target_volume_id):
                logging.info("Coalescing attach event for %s into the completed run.", volume_id)
            else:
                self._log_not_target(volume_id)

    def _handle_attach(self, volume_id: str) -> Optional[BackupRun]:
        detected = volume_id.strip()
        if not volume_matches(detected, self.config.target_volume_id):
            self._log_not_target(detected)
            return None

        logging.info(BANNER)
        logging.info("Target volume detected: %s", detected)
        run = self._sequencer.run(detected)
        if run is not None:
            self.last_run = run
        self._coalesce_pending()
        logging.info(BANNER)
        return run

    def process_next(self, timeout: float = 0.0) -> Optional[BackupRun]:
        """Handle one queued attach event, waiting up to timeout seconds for it."""
        try:
            volume_id = self._event_queue.get(timeout=timeout)
        except Empty:
            return None
        return self._handle_attach(volume_id)

    def run(self) -> None:
        logging.info("Volume watcher service is starting.")
        self.start()
        try:
            while not self._stop_event.is_set():
                self.process_next(timeout=1.0)
        except KeyboardInterrupt:
            logging.info("Stopping volume watcher.")
        finally:
            self._stop_event.set()
            self._release_channels()
            self.state = "IDLE"

    def stop(self) -> None:
        logging.info("Volume watcher service is stopping.")
        self._stop_event.set()
        self._release_channels()
        self.state = "IDLE"
