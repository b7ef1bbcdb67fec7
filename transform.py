"""
smcrypt Transform Jobs
======================

One end-to-end encrypt or decrypt of a file, as a cancellable unit of
work that reports progress in ``[0, 100]``.

A job runs synchronously via :meth:`TransformJob.run` or on its own
thread via :meth:`TransformJob.start`.  Cancellation is cooperative: the
token is checked at every chunk boundary, so a single chunk's cipher
work always completes and body output stays block-aligned.

Errors never escape ``run``; they become ``JobState.FAILED`` with the
exception kept on the result.  Cancellation is a normal terminal state,
not an error.  On ``FAILED`` or ``CANCELLED`` the output file may be
partial and belongs to the caller to remove (see :func:`discard_output`).
"""

from __future__ import annotations

import enum
import errno
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Union

import smcrypt

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, str], None]

# ---------------------------------------------------------------------------
# States & results
# ---------------------------------------------------------------------------


class JobState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.CANCELLED, JobState.FAILED)


class Operation(enum.Enum):
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"


@dataclass
class JobResult:
    """Terminal outcome of a :class:`TransformJob`."""

    state: JobState
    operation: Operation
    input_path: Path
    output_path: Path
    error: Optional[BaseException] = None
    elapsed: float = 0.0
    bytes_read: int = 0
    bytes_written: int = 0
    input_digest: Optional[bytes] = None
    output_digest: Optional[bytes] = None

    @property
    def reason(self) -> str:
        """Failure message, or an empty string."""
        if self.error is None:
            return ""
        return str(self.error) or type(self.error).__name__

    @property
    def ok(self) -> bool:
        return self.state is JobState.SUCCEEDED


# ---------------------------------------------------------------------------
# Cancellation & progress
# ---------------------------------------------------------------------------


class CancelToken:
    """Thread-safe cancellation flag, settable from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class ProgressEvent:
    percent: int
    phase: str
    result: Optional[JobResult] = None

    @property
    def terminal(self) -> bool:
        return self.result is not None


class ProgressChannel:
    """
    Non-blocking progress mailbox between a worker and its caller.

    Publishing never waits for the consumer.  If the consumer falls
    behind, only the latest progress value is kept; the terminal event
    posted by :meth:`close` is kept separately and never dropped.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._latest: Optional[ProgressEvent] = None
        self._terminal: Optional[ProgressEvent] = None
        self._delivered_terminal = False
        self._last_percent = 0

    def __call__(self, percent: int, phase: str) -> None:
        with self._cond:
            if self._terminal is not None:
                return
            self._latest = ProgressEvent(percent, phase)
            self._last_percent = percent
            self._cond.notify_all()

    def close(self, result: JobResult) -> None:
        """Post the terminal event for *result*; later calls are ignored."""
        with self._cond:
            if self._terminal is None:
                percent = 100 if result.state is JobState.SUCCEEDED else self._last_percent
                self._terminal = ProgressEvent(percent, result.state.value, result)
                self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._terminal is not None

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """
        Return the next event, waiting up to *timeout* seconds.

        Pending progress is returned before the terminal event.  Returns
        ``None`` on timeout or once the terminal event has been consumed.
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._latest is not None or self._terminal is not None,
                timeout,
            )
            if not ready:
                return None
            if self._latest is None and self._delivered_terminal:
                return None
            if self._latest is not None:
                event, self._latest = self._latest, None
                return event
            self._delivered_terminal = True
            return self._terminal

    def events(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        """Yield events until (and including) the terminal one."""
        while True:
            event = self.get(timeout)
            if event is None:
                return
            yield event
            if event.terminal:
                return


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def validate_paths(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
) -> None:
    """
    Check the filesystem preconditions of a job.

    Raises
    ------
    OSError
        ``FileNotFoundError``, ``IsADirectoryError`` or ``PermissionError``
        as appropriate, or a plain ``OSError`` when input and output are
        the same file.
    """
    src = Path(input_path)
    dst = Path(output_path)
    if not src.exists():
        raise FileNotFoundError(errno.ENOENT, "Input file does not exist", str(src))
    if not src.is_file():
        raise IsADirectoryError(errno.EISDIR, "Input is not a regular file", str(src))
    if not os.access(src, os.R_OK):
        raise PermissionError(errno.EACCES, "Input file is not readable", str(src))
    parent = dst.parent if str(dst.parent) else Path(".")
    if not parent.is_dir():
        raise FileNotFoundError(errno.ENOENT, "Output directory does not exist", str(parent))
    if dst.exists():
        if dst.is_dir():
            raise IsADirectoryError(errno.EISDIR, "Output path is a directory", str(dst))
        if src.samefile(dst):
            raise OSError(errno.EINVAL, "Input and output are the same file", str(dst))
        if not os.access(dst, os.W_OK):
            raise PermissionError(errno.EACCES, "Output file is not writable", str(dst))
    elif not os.access(parent, os.W_OK):
        raise PermissionError(errno.EACCES, "Output directory is not writable", str(parent))


def discard_output(path: Union[str, Path]) -> bool:
    """Remove a partial output file. Returns True if something was deleted."""
    out = Path(path)
    try:
        out.unlink()
    except FileNotFoundError:
        return False
    return True


# ---------------------------------------------------------------------------
# TransformJob
# ---------------------------------------------------------------------------


class TransformJob:
    """
    Encrypt or decrypt one file.

    Parameters
    ----------
    operation : Operation
    input_path, output_path : path-like
    key : bytes
        SM2 public key for ``ENCRYPT``, private key for ``DECRYPT``.
    chunk_size : int
        Body bytes read per step (default 8 KiB).
    cancel_token : CancelToken, optional
        Shared flag; a private one is created if omitted.
    progress : callable(percent, phase), optional
        Progress sink, e.g. a :class:`ProgressChannel`.  Must not block.
    fingerprint : bool
        On success, also compute SM3 digests of input and output.
    """

    def __init__(
        self,
        operation: Operation,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        key: bytes,
        *,
        chunk_size: int = smcrypt.DEFAULT_CHUNK,
        cancel_token: Optional[CancelToken] = None,
        progress: Optional[ProgressSink] = None,
        fingerprint: bool = False,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        self.operation = Operation(operation)
        self.input_path = Path(input_path)
        self.output_path = Path(output_path)
        self.chunk_size = chunk_size
        self.cancel_token = cancel_token or CancelToken()
        self.fingerprint = fingerprint
        self._key = bytes(key)
        self._progress = progress
        self._state = JobState.PENDING
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._result: Optional[JobResult] = None
        self._bytes_read = 0
        self._bytes_written = 0

    # ----- public API -----

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def result(self) -> Optional[JobResult]:
        return self._result

    def cancel(self) -> None:
        """Request cancellation; honoured at the next chunk boundary."""
        self.cancel_token.cancel()

    def start(self) -> threading.Thread:
        """
        Run the job on a dedicated non-daemon thread.

        Interpreter shutdown waits for the job, so its files are always
        closed before the process exits; call :meth:`cancel` to end early.
        """
        self._claim()
        self._thread = threading.Thread(
            target=self._execute,
            name=f"smcrypt-{self.operation.value}",
        )
        self._thread.start()
        return self._thread

    def wait(self, timeout: Optional[float] = None) -> Optional[JobResult]:
        """Join the worker thread; returns the result once terminal."""
        if self._thread is not None:
            self._thread.join(timeout)
        return self._result

    def run(self) -> JobResult:
        """Run the job in the calling thread and return its result."""
        self._claim()
        return self._execute()

    # ----- execution -----

    def _claim(self) -> None:
        with self._state_lock:
            if self._state is not JobState.PENDING:
                raise RuntimeError(f"Job already {self._state.value}.")
            self._state = JobState.RUNNING

    def _execute(self) -> JobResult:
        t0 = time.perf_counter()
        logger.info(
            "Starting %s: %s -> %s",
            self.operation.value, self.input_path, self.output_path,
        )
        error: Optional[BaseException] = None
        try:
            validate_paths(self.input_path, self.output_path)
            if self.operation is Operation.ENCRYPT:
                completed = self._encrypt()
            else:
                completed = self._decrypt()
            state = JobState.SUCCEEDED if completed else JobState.CANCELLED
        except (smcrypt.SMCryptError, OSError) as exc:
            state, error = JobState.FAILED, exc
            logger.warning("%s failed: %s", self.operation.value.capitalize(), exc)
        except Exception as exc:
            state, error = JobState.FAILED, exc
            logger.exception("Unexpected error during %s", self.operation.value)

        result = JobResult(
            state=state,
            operation=self.operation,
            input_path=self.input_path,
            output_path=self.output_path,
            error=error,
            bytes_read=self._bytes_read,
            bytes_written=self._bytes_written,
        )
        if state is JobState.SUCCEEDED and self.fingerprint:
            try:
                result.input_digest = smcrypt.digest_file(self.input_path)
                result.output_digest = smcrypt.digest_file(self.output_path)
            except (smcrypt.SMCryptError, OSError) as exc:
                result.state, result.error = JobState.FAILED, exc
                logger.warning("Fingerprinting failed: %s", exc)
        result.elapsed = time.perf_counter() - t0

        if result.state is JobState.CANCELLED:
            logger.info(
                "%s cancelled after %d bytes", self.operation.value.capitalize(),
                self._bytes_read,
            )
        elif result.state is JobState.SUCCEEDED:
            logger.info(
                "%s finished in %.3fs (%d bytes in, %d bytes out)",
                self.operation.value.capitalize(), result.elapsed,
                result.bytes_read, result.bytes_written,
            )

        self._result = result
        self._state = result.state
        close = getattr(self._progress, "close", None)
        if close is not None:
            close(result)
        return result

    def _report(self, percent: int, phase: str) -> None:
        if self._progress is not None:
            self._progress(percent, phase)

    def _stop_requested(self) -> bool:
        return self.cancel_token.cancelled

    def _write(self, fout: BinaryIO, data: bytes) -> None:
        if data:
            fout.write(data)
            self._bytes_written += len(data)

    # Each protocol returns False as soon as it observes cancellation.

    def _encrypt(self) -> bool:
        smcrypt.validate_public_key(self._key)
        self._report(0, "preparing")
        if self._stop_requested():
            return False

        session_key = smcrypt.generate_session_key()
        iv = smcrypt.generate_iv()
        self._report(10, "session key ready")
        if self._stop_requested():
            return False

        envelope = smcrypt.wrap(self._key, session_key)
        self._report(20, "session key wrapped")
        if self._stop_requested():
            return False

        total = self.input_path.stat().st_size
        cipher = smcrypt.open_cipher(session_key, iv, for_encryption=True)
        with open(self.input_path, "rb") as fin, open(self.output_path, "wb") as fout:
            self._bytes_written += smcrypt.write_header(fout, envelope, iv)
            if self._stop_requested():
                return False

            for chunk in iter(lambda: fin.read(self.chunk_size), b""):
                self._write(fout, cipher.update(chunk))
                self._bytes_read += len(chunk)
                done = self._bytes_read
                self._report(min(20 + done * 79 // max(total, done), 99), "encrypting")
                if self._stop_requested():
                    return False

            self._write(fout, cipher.finish())
        self._report(100, "done")
        return True

    def _decrypt(self) -> bool:
        smcrypt.validate_private_key(self._key)
        self._report(0, "preparing")
        if self._stop_requested():
            return False

        file_size = self.input_path.stat().st_size
        with open(self.input_path, "rb") as fin:
            header = smcrypt.read_header(fin)
            self._bytes_read = header.body_offset
            self._report(20, "header read")
            if self._stop_requested():
                return False

            session_key = smcrypt.unwrap(self._key, header.envelope)
            if len(session_key) != smcrypt.SESSION_KEY_SIZE:
                raise smcrypt.DecryptionError(
                    "SM2 decryption failed: wrong key or corrupted data."
                )
            self._report(40, "session key unwrapped")
            if self._stop_requested():
                return False

            body_size = file_size - header.body_offset
            if body_size <= 0:
                raise smcrypt.EmptyBody("Container has no ciphertext body.")

            cipher = smcrypt.open_cipher(session_key, header.iv, for_encryption=False)
            processed = 0
            with open(self.output_path, "wb") as fout:
                for chunk in iter(lambda: fin.read(self.chunk_size), b""):
                    self._write(fout, cipher.update(chunk))
                    processed += len(chunk)
                    self._bytes_read += len(chunk)
                    self._report(min(40 + processed * 59 // body_size, 99), "decrypting")
                    if self._stop_requested():
                        return False

                self._write(fout, cipher.finish())
        self._report(100, "done")
        return True


# ---------------------------------------------------------------------------
# Convenience wrappers
# ---------------------------------------------------------------------------


def encrypt_file(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    public_key: bytes,
    **kwargs,
) -> JobResult:
    """Run an encrypt job synchronously."""
    return TransformJob(Operation.ENCRYPT, input_path, output_path, public_key, **kwargs).run()


def decrypt_file(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    private_key: bytes,
    **kwargs,
) -> JobResult:
    """Run a decrypt job synchronously."""
    return TransformJob(Operation.DECRYPT, input_path, output_path, private_key, **kwargs).run()
