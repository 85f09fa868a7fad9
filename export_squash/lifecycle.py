# -*- coding: utf-8 -*-

import logging
import os
import shutil
import signal
import tempfile
import threading
from typing import Optional

from export_squash.errors import ArchiveIOError


class TempDirGuard(object):
    """
    Owns the temporary directory used while squashing and makes sure it
    is removed exactly once: when the work is finished (successfully or
    not) or when the process is interrupted.

    The removal is done by a dedicated thread waiting for the 'finished'
    event. Both the main flow and the signal handlers set the event and
    wait for the thread to complete.

    If the directory was provided by the user it is kept for easier
    debugging.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, log, tmp_dir: Optional[str] = None):
        self.log: logging.Logger = log
        self.tmp_dir: Optional[str] = tmp_dir
        self.development = bool(tmp_dir)
        self.error: Optional[OSError] = None

        self._finished = threading.Event()
        self._cleaner = threading.Thread(
            target=self._cleanup, name="export-squash-cleanup", daemon=True
        )
        self._handlers = {}

    def __enter__(self) -> str:
        self.tmp_dir = self._prepare_tmp_directory(self.tmp_dir)
        self._install_handlers()
        self._cleaner.start()

        return self.tmp_dir

    def __exit__(self, exc_type, exc_value, traceback):
        self.finish()

    def _prepare_tmp_directory(self, tmp_dir: Optional[str]) -> str:
        """Creates temporary directory that is used to work on layers"""

        try:
            if tmp_dir:
                if os.path.exists(tmp_dir):
                    raise ArchiveIOError(
                        f"The '{tmp_dir}' directory already exists, please remove it before you proceed"
                    )
                os.makedirs(tmp_dir)
            else:
                tmp_dir = tempfile.mkdtemp(prefix="export-squash-")
        except OSError as e:
            raise ArchiveIOError(f"Preparing temporary directory failed: {e}")

        self.log.debug("Using %s as the temporary directory" % tmp_dir)

        return os.path.abspath(tmp_dir)

    def _install_handlers(self):
        # Signal handlers can be registered only in the main thread
        if threading.current_thread() is not threading.main_thread():
            self.log.debug(
                "Not running in the main thread, signal handlers not installed"
            )
            return

        for signum in self.SIGNALS:
            self._handlers[signum] = signal.signal(signum, self._interrupt)

    def _restore_handlers(self):
        for signum, handler in self._handlers.items():
            signal.signal(signum, handler)

        self._handlers = {}

    def _interrupt(self, signum, frame):
        self.log.debug("Received signal %s, cleaning up..." % signum)
        self.finish()

        raise KeyboardInterrupt()

    def _cleanup(self):
        self._finished.wait()

        if self.development:
            self.log.info("Temporary directory %s left for inspection" % self.tmp_dir)
            return

        if not os.path.exists(self.tmp_dir):
            return

        self.log.debug("Cleaning up %s temporary directory" % self.tmp_dir)

        try:
            shutil.rmtree(self.tmp_dir)
        except OSError as e:
            self.log.critical(
                "Could not remove %s temporary directory: %s" % (self.tmp_dir, e)
            )
            self.error = e

    def finish(self):
        """
        Triggers the cleanup and waits until it is done. Calling it
        more than once is safe, the directory is removed only once.
        """
        self._finished.set()

        if self._cleaner.ident is not None:
            self._cleaner.join()

        self._restore_handlers()

        if self.error is not None:
            error, self.error = self.error, None
            raise ArchiveIOError(
                f"Removing temporary directory {self.tmp_dir} failed: {error}"
            )
