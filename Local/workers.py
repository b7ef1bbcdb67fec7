"""
smcrypt Background Workers
==========================

QThread-based workers hosting long-running file jobs for the desktop
edition.  Emits signals for progress tracking, elapsed time, and
result/error reporting.

Features:
  - Cancellation support for file operations (checked between chunks)
  - Throttled progress signals to avoid UI flooding
  - Partial output is removed before a cancel/failure is reported
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional, Union

from PySide6.QtCore import QThread, Signal

import smcrypt
from transform import JobState, Operation, TransformJob, discard_output

# Minimum interval between progress signal emissions (seconds)
PROGRESS_THROTTLE = 0.05  # 50 ms -> max ~20 updates/sec


# ---------------------------------------------------------------------------
# File Workers
# ---------------------------------------------------------------------------


class _FileTransformWorker(QThread):
    """Shared plumbing for the encrypt/decrypt workers."""

    progress = Signal(int, str, float)  # (percent, phase, elapsed_sec)
    completed = Signal(str, float)      # (output_path, elapsed_sec)
    cancelled = Signal()
    failed = Signal(str)                # error message

    operation: Operation

    def __init__(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        key: bytes,
        *,
        chunk_size: int = smcrypt.DEFAULT_CHUNK,
        parent=None,
    ):
        super().__init__(parent)
        self._output_path = str(output_path)
        self._t0 = 0.0
        self._last_emit = 0.0
        self._job = TransformJob(
            self.operation,
            input_path,
            output_path,
            key,
            chunk_size=chunk_size,
            progress=self._on_progress,
        )

    def cancel(self) -> None:
        """Request cancellation (checked between chunks)."""
        self._job.cancel()

    @property
    def is_cancelled(self) -> bool:
        return self._job.cancel_token.cancelled

    @property
    def job(self) -> TransformJob:
        return self._job

    def _on_progress(self, percent: int, phase: str) -> None:
        now = time.perf_counter()
        if percent >= 100 or now - self._last_emit >= PROGRESS_THROTTLE:
            self.progress.emit(percent, phase, now - self._t0)
            self._last_emit = now

    def run(self) -> None:
        self._t0 = time.perf_counter()
        self._last_emit = 0.0
        result = self._job.run()

        if result.state is JobState.SUCCEEDED:
            self.completed.emit(self._output_path, result.elapsed)
            return
        discard_output(self._output_path)
        if result.state is JobState.CANCELLED:
            self.cancelled.emit()
        else:
            self.failed.emit(result.reason)


class FileEncryptWorker(_FileTransformWorker):
    """Encrypt a file for an SM2 public key in a background thread."""

    operation = Operation.ENCRYPT

    def __init__(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        public_key: bytes,
        *,
        chunk_size: int = smcrypt.DEFAULT_CHUNK,
        parent=None,
    ):
        super().__init__(
            input_path, output_path, public_key, chunk_size=chunk_size, parent=parent
        )


class FileDecryptWorker(_FileTransformWorker):
    """Decrypt a container with an SM2 private key in a background thread."""

    operation = Operation.DECRYPT

    def __init__(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        private_key: bytes,
        *,
        chunk_size: int = smcrypt.DEFAULT_CHUNK,
        parent=None,
    ):
        super().__init__(
            input_path, output_path, private_key, chunk_size=chunk_size, parent=parent
        )


# ---------------------------------------------------------------------------
# Digest Worker
# ---------------------------------------------------------------------------


class FileDigestWorker(QThread):
    """Compute the SM3 fingerprint of a file in a background thread."""

    completed = Signal(str, str)  # (path, hex digest)
    failed = Signal(str)

    def __init__(self, path: Union[str, Path], parent=None):
        super().__init__(parent)
        self._path = str(path)
        self.digest: Optional[str] = None

    def run(self) -> None:
        try:
            self.digest = smcrypt.digest_file_hex(self._path)
        except (smcrypt.SMCryptError, OSError) as exc:
            self.failed.emit(str(exc))
            return
        self.completed.emit(self._path, self.digest)
