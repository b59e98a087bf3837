import signal
import sys
import os
import logging
from datetime import datetime
from pathlib import Path

from usbmirror import create_watcher
from usbmirror.config import parse_args

LOG_FILE_ENV = 'USBMIRROR_LOG_FILE'
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
_watcher = None


def _log_file_path():
    """Path from USBMIRROR_LOG_FILE, else a timestamped file under ./logs."""
    configured = os.environ.get(LOG_FILE_ENV)
    if configured:
        return Path(configured)
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return Path(__file__).resolve().parent / 'logs' / f'usbmirror_{stamp}.log'


def _log_handlers(log_path):
    handlers = []
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))
    except OSError as exc:
        print(f"Cannot write log file {log_path}: {exc}", file=sys.stderr)
    if sys.stdout and hasattr(sys.stdout, 'write'):
        handlers.append(logging.StreamHandler(sys.stdout))
    return handlers


def _configure_logging(level_name):
    handlers = _log_handlers(_log_file_path())
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers or None,
    )
    return handlers


def signal_handler(signum, frame):
    """Signal handler for graceful shutdown"""
    logging.info("Received signal %s. Shutting down...", signum)
    if _watcher is not None:
        _watcher.stop()


def main(argv=None):
    global _watcher
    config = parse_args(argv)
    _configure_logging(config.log_level)
    _watcher = create_watcher(config)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    _watcher.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
