"""
tests/test_transform.py
=======================
End-to-end encrypt/decrypt jobs: round trips, tamper and wrong-key
detection, cancellation, progress reporting and threading.

Run with:  python -m pytest tests/ -v
"""

import os
import tempfile
import threading
import unittest
from pathlib import Path

import smcrypt
import transform
from transform import (
    CancelToken,
    JobState,
    Operation,
    ProgressChannel,
    TransformJob,
)

HEADER_SIZE = 4 + smcrypt.WRAPPED_KEY_SIZE + smcrypt.IV_SIZE


class _JobTestCase(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.pair = smcrypt.generate_keypair()

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.dir = Path(self._tmp.name)
        self.src = self.dir / "plain.bin"
        self.enc = self.dir / "plain.bin.enc"
        self.dec = self.dir / "plain.dec.bin"

    def write_input(self, data: bytes) -> None:
        self.src.write_bytes(data)


class TestRoundTrip(_JobTestCase):

    def test_various_sizes(self):
        for size in (0, 1, 15, 16, 17, 8192, 8193, 50_000):
            with self.subTest(size=size):
                pt = os.urandom(size)
                self.write_input(pt)
                enc = transform.encrypt_file(self.src, self.enc, self.pair.public_key)
                self.assertIs(enc.state, JobState.SUCCEEDED, enc.reason)
                self.assertEqual(
                    self.enc.stat().st_size,
                    smcrypt.container_size(smcrypt.WRAPPED_KEY_SIZE, size),
                )
                dec = transform.decrypt_file(self.enc, self.dec, self.pair.private_key)
                self.assertIs(dec.state, JobState.SUCCEEDED, dec.reason)
                self.assertEqual(self.dec.read_bytes(), pt)

    def test_empty_file_container_size(self):
        self.write_input(b"")
        result = transform.encrypt_file(self.src, self.enc, self.pair.public_key)
        self.assertTrue(result.ok)
        self.assertEqual(self.enc.stat().st_size, 4 + 113 + 16 + 16)
        self.assertEqual(result.bytes_written, 4 + 113 + 16 + 16)
        transform.decrypt_file(self.enc, self.dec, self.pair.private_key)
        self.assertEqual(self.dec.read_bytes(), b"")

    def test_one_megabyte_with_fingerprints(self):
        pt = os.urandom(1_000_000)
        self.write_input(pt)
        enc = transform.encrypt_file(
            self.src, self.enc, self.pair.public_key, fingerprint=True
        )
        self.assertTrue(enc.ok, enc.reason)
        self.assertEqual(enc.input_digest, smcrypt.digest_file(self.src))
        self.assertEqual(enc.output_digest, smcrypt.digest_file(self.enc))
        dec = transform.decrypt_file(
            self.enc, self.dec, self.pair.private_key, fingerprint=True
        )
        self.assertTrue(dec.ok, dec.reason)
        self.assertEqual(self.dec.read_bytes(), pt)
        self.assertEqual(dec.output_digest, enc.input_digest)
        self.assertEqual(dec.bytes_read, self.enc.stat().st_size)

    def test_uncompressed_public_key(self):
        pair = smcrypt.generate_keypair(compressed=False)
        self.write_input(b"uncompressed")
        self.assertTrue(transform.encrypt_file(self.src, self.enc, pair.public_key).ok)
        self.assertTrue(transform.decrypt_file(self.enc, self.dec, pair.private_key).ok)
        self.assertEqual(self.dec.read_bytes(), b"uncompressed")

    def test_odd_chunk_size(self):
        pt = os.urandom(10_000)
        self.write_input(pt)
        transform.encrypt_file(self.src, self.enc, self.pair.public_key, chunk_size=7)
        transform.decrypt_file(self.enc, self.dec, self.pair.private_key, chunk_size=13)
        self.assertEqual(self.dec.read_bytes(), pt)

    def test_two_encryptions_differ(self):
        self.write_input(b"same input")
        other = self.dir / "other.enc"
        transform.encrypt_file(self.src, self.enc, self.pair.public_key)
        transform.encrypt_file(self.src, other, self.pair.public_key)
        self.assertNotEqual(self.enc.read_bytes(), other.read_bytes())


class TestFailures(_JobTestCase):

    def _encrypted(self, data: bytes) -> None:
        self.write_input(data)
        self.assertTrue(transform.encrypt_file(self.src, self.enc, self.pair.public_key).ok)

    def _tampered(self, offset: int) -> transform.JobResult:
        data = bytearray(self.enc.read_bytes())
        data[HEADER_SIZE + offset] ^= 0x01
        self.enc.write_bytes(bytes(data))
        return transform.decrypt_file(self.enc, self.dec, self.pair.private_key)

    def test_flip_in_second_to_last_block_raises_integrity_error(self):
        # 64 bytes -> 5 body blocks, the last of which is all padding
        pt = os.urandom(64)
        for offset in range(48, 64):
            with self.subTest(offset=offset):
                self._encrypted(pt)
                result = self._tampered(offset)
                self.assertIs(result.state, JobState.FAILED)
                self.assertIsInstance(result.error, smcrypt.IntegrityError)

    def test_flip_in_last_block_never_yields_plaintext(self):
        pt = os.urandom(64)
        for offset in (64, 70, 79):
            with self.subTest(offset=offset):
                self._encrypted(pt)
                result = self._tampered(offset)
                if result.state is JobState.FAILED:
                    self.assertIsInstance(result.error, smcrypt.IntegrityError)
                else:
                    self.assertNotEqual(self.dec.read_bytes(), pt)

    def test_flip_in_first_block_is_not_detected(self):
        # CBC without a MAC: only the last two blocks reach the padding check
        pt = os.urandom(64)
        self._encrypted(pt)
        result = self._tampered(0)
        self.assertIs(result.state, JobState.SUCCEEDED)
        out = self.dec.read_bytes()
        self.assertEqual(len(out), len(pt))
        self.assertNotEqual(out[:16], pt[:16])
        self.assertEqual(out[16], pt[16] ^ 0x01)
        self.assertEqual(out[17:], pt[17:])

    def test_truncated_body_raises_integrity_error(self):
        self._encrypted(b"T" * 100)
        data = self.enc.read_bytes()
        self.enc.write_bytes(data[:-5])
        result = transform.decrypt_file(self.enc, self.dec, self.pair.private_key)
        self.assertIsInstance(result.error, smcrypt.IntegrityError)

    def test_wrong_private_key(self):
        self._encrypted(b"secret")
        other = smcrypt.generate_keypair()
        result = transform.decrypt_file(self.enc, self.dec, other.private_key)
        self.assertIs(result.state, JobState.FAILED)
        self.assertIsInstance(result.error, smcrypt.DecryptionError)
        self.assertNotIsInstance(result.error, smcrypt.IntegrityError)
        self.assertFalse(self.dec.exists())

    def test_tampered_envelope(self):
        self._encrypted(b"secret")
        data = bytearray(self.enc.read_bytes())
        data[4 + 70] ^= 0x01
        self.enc.write_bytes(bytes(data))
        result = transform.decrypt_file(self.enc, self.dec, self.pair.private_key)
        self.assertIsInstance(result.error, smcrypt.DecryptionError)

    def test_header_only_container_is_empty_body(self):
        self._encrypted(b"secret")
        self.enc.write_bytes(self.enc.read_bytes()[:HEADER_SIZE])
        result = transform.decrypt_file(self.enc, self.dec, self.pair.private_key)
        self.assertIsInstance(result.error, smcrypt.EmptyBody)

    def test_truncated_header_is_malformed(self):
        self._encrypted(b"secret")
        self.enc.write_bytes(self.enc.read_bytes()[:50])
        result = transform.decrypt_file(self.enc, self.dec, self.pair.private_key)
        self.assertIsInstance(result.error, smcrypt.MalformedContainer)
        self.assertNotIsInstance(result.error, smcrypt.EmptyBody)

    def test_missing_input_is_io_error(self):
        result = transform.encrypt_file(
            self.dir / "missing.bin", self.enc, self.pair.public_key
        )
        self.assertIs(result.state, JobState.FAILED)
        self.assertIsInstance(result.error, FileNotFoundError)

    def test_input_is_directory(self):
        result = transform.encrypt_file(self.dir, self.enc, self.pair.public_key)
        self.assertIsInstance(result.error, IsADirectoryError)

    def test_missing_output_directory(self):
        self.write_input(b"x")
        result = transform.encrypt_file(
            self.src, self.dir / "nope" / "out.enc", self.pair.public_key
        )
        self.assertIsInstance(result.error, FileNotFoundError)

    def test_same_input_and_output(self):
        self.write_input(b"do not truncate me")
        result = transform.encrypt_file(self.src, self.src, self.pair.public_key)
        self.assertIs(result.state, JobState.FAILED)
        self.assertIsInstance(result.error, OSError)
        self.assertEqual(self.src.read_bytes(), b"do not truncate me")

    def test_invalid_public_key(self):
        self.write_input(b"x")
        result = transform.encrypt_file(self.src, self.enc, b"\x02" * 10)
        self.assertIsInstance(result.error, smcrypt.InvalidKeyFormat)
        self.assertFalse(self.enc.exists())

    def test_private_key_used_for_encrypt(self):
        self.write_input(b"x")
        result = transform.encrypt_file(self.src, self.enc, self.pair.private_key)
        self.assertIsInstance(result.error, smcrypt.InvalidKeyFormat)

    def test_reason_carries_message(self):
        result = transform.encrypt_file(
            self.dir / "missing.bin", self.enc, self.pair.public_key
        )
        self.assertIn("does not exist", result.reason)

    def test_discard_output(self):
        self.enc.write_bytes(b"partial")
        self.assertTrue(transform.discard_output(self.enc))
        self.assertFalse(self.enc.exists())
        self.assertFalse(transform.discard_output(self.enc))


class TestCancellation(_JobTestCase):

    def test_cancel_mid_stream_leaves_block_aligned_body(self):
        self.write_input(os.urandom(200_000))
        token = CancelToken()
        seen = []

        def on_progress(percent, phase):
            seen.append(phase)
            if phase == "encrypting" and seen.count("encrypting") == 3:
                token.cancel()

        result = TransformJob(
            Operation.ENCRYPT, self.src, self.enc, self.pair.public_key,
            chunk_size=1000, cancel_token=token, progress=on_progress,
        ).run()
        self.assertIs(result.state, JobState.CANCELLED)
        self.assertIsNone(result.error)
        self.assertEqual(result.bytes_read, 3000)
        body = self.enc.stat().st_size - HEADER_SIZE
        self.assertEqual(body % smcrypt.BLOCK_SIZE, 0)
        self.assertEqual(self.enc.stat().st_size, result.bytes_written)
        self.assertNotIn("done", seen)

    def test_cancel_decrypt_mid_stream(self):
        self.write_input(os.urandom(100_000))
        transform.encrypt_file(self.src, self.enc, self.pair.public_key)
        token = CancelToken()

        def on_progress(percent, phase):
            if phase == "decrypting":
                token.cancel()

        result = TransformJob(
            Operation.DECRYPT, self.enc, self.dec, self.pair.private_key,
            chunk_size=1024, cancel_token=token, progress=on_progress,
        ).run()
        self.assertIs(result.state, JobState.CANCELLED)
        self.assertEqual(self.dec.stat().st_size % smcrypt.BLOCK_SIZE, 0)
        self.assertLess(self.dec.stat().st_size, 100_000)

    def test_cancel_before_start_writes_nothing(self):
        self.write_input(b"never written")
        token = CancelToken()
        token.cancel()
        job = TransformJob(
            Operation.ENCRYPT, self.src, self.enc, self.pair.public_key,
            cancel_token=token,
        )
        result = job.run()
        self.assertIs(result.state, JobState.CANCELLED)
        self.assertIs(job.state, JobState.CANCELLED)
        self.assertFalse(self.enc.exists())


class TestProgressAndThreading(_JobTestCase):

    def test_progress_is_monotonic_and_ends_at_100(self):
        self.write_input(os.urandom(100_000))
        events = []
        transform.encrypt_file(
            self.src, self.enc, self.pair.public_key,
            chunk_size=4096, progress=lambda p, phase: events.append((p, phase)),
        )
        percents = [p for p, _ in events]
        self.assertEqual(percents[0], 0)
        self.assertEqual(events[-1], (100, "done"))
        self.assertEqual(percents, sorted(percents))
        self.assertTrue(all(0 <= p <= 100 for p in percents))
        self.assertIn((20, "session key wrapped"), events)
        self.assertTrue(all(p <= 99 for p, phase in events if phase == "encrypting"))

    def test_decrypt_progress_phases(self):
        self.write_input(os.urandom(30_000))
        transform.encrypt_file(self.src, self.enc, self.pair.public_key)
        events = []
        transform.decrypt_file(
            self.enc, self.dec, self.pair.private_key,
            progress=lambda p, phase: events.append((p, phase)),
        )
        self.assertIn((20, "header read"), events)
        self.assertIn((40, "session key unwrapped"), events)
        decrypting = [p for p, phase in events if phase == "decrypting"]
        self.assertTrue(decrypting and all(40 <= p <= 99 for p in decrypting))
        self.assertEqual(events[-1], (100, "done"))

    def test_threaded_job_with_channel(self):
        pt = os.urandom(300_000)
        self.write_input(pt)
        channel = ProgressChannel()
        job = TransformJob(
            Operation.ENCRYPT, self.src, self.enc, self.pair.public_key,
            progress=channel,
        )
        job.start()
        events = list(channel.events(timeout=60))
        job.wait(60)
        self.assertTrue(events[-1].terminal)
        self.assertIs(events[-1].result.state, JobState.SUCCEEDED)
        self.assertEqual(events[-1].percent, 100)
        self.assertTrue(channel.closed)
        self.assertIsNone(channel.get(timeout=0))
        self.assertIs(job.state, JobState.SUCCEEDED)
        self.assertTrue(transform.decrypt_file(self.enc, self.dec, self.pair.private_key).ok)
        self.assertEqual(self.dec.read_bytes(), pt)

    def test_channel_terminal_event_survives_slow_consumer(self):
        self.write_input(os.urandom(50_000))
        channel = ProgressChannel()
        result = transform.encrypt_file(
            self.src, self.enc, self.pair.public_key, chunk_size=512, progress=channel
        )
        # nothing consumed while running: latest progress then terminal
        first = channel.get(timeout=0)
        self.assertEqual((first.percent, first.phase), (100, "done"))
        last = channel.get(timeout=0)
        self.assertTrue(last.terminal)
        self.assertIs(last.result, result)

    def test_channel_reports_cancel(self):
        self.write_input(b"x")
        channel = ProgressChannel()
        token = CancelToken()
        token.cancel()
        transform.encrypt_file(
            self.src, self.enc, self.pair.public_key,
            cancel_token=token, progress=channel,
        )
        events = list(channel.events(timeout=1))
        self.assertEqual(events[-1].phase, "cancelled")
        self.assertIs(events[-1].result.state, JobState.CANCELLED)

    def test_channel_get_after_terminal_returns_none_without_timeout(self):
        self.write_input(os.urandom(1000))
        channel = ProgressChannel()
        transform.encrypt_file(self.src, self.enc, self.pair.public_key, progress=channel)
        self.assertTrue(list(channel.events())[-1].terminal)
        seen = []
        reader = threading.Thread(target=lambda: seen.append(channel.get()))
        reader.start()
        reader.join(5)
        self.assertFalse(reader.is_alive())
        self.assertEqual(seen, [None])
        self.assertEqual(list(channel.events()), [])

    def test_start_uses_non_daemon_thread(self):
        self.write_input(b"x")
        job = TransformJob(Operation.ENCRYPT, self.src, self.enc, self.pair.public_key)
        thread = job.start()
        self.assertFalse(thread.daemon)
        self.assertIs(job.wait(60).state, JobState.SUCCEEDED)

    def test_job_cannot_run_twice(self):
        self.write_input(b"x")
        job = TransformJob(Operation.ENCRYPT, self.src, self.enc, self.pair.public_key)
        job.run()
        with self.assertRaises(RuntimeError):
            job.run()
        with self.assertRaises(RuntimeError):
            job.start()

    def test_invalid_chunk_size(self):
        with self.assertRaises(ValueError):
            TransformJob(
                Operation.ENCRYPT, self.src, self.enc, self.pair.public_key, chunk_size=0
            )

    def test_state_transitions(self):
        self.write_input(b"x")
        job = TransformJob(Operation.ENCRYPT, self.src, self.enc, self.pair.public_key)
        self.assertIs(job.state, JobState.PENDING)
        self.assertFalse(job.state.terminal)
        result = job.run()
        self.assertIs(job.state, JobState.SUCCEEDED)
        self.assertTrue(job.state.terminal)
        self.assertIs(job.result, result)
        self.assertGreaterEqual(result.elapsed, 0.0)


class TestValidatePaths(_JobTestCase):

    def test_valid_paths_pass(self):
        self.write_input(b"x")
        transform.validate_paths(self.src, self.enc)

    def test_output_is_directory(self):
        self.write_input(b"x")
        with self.assertRaises(IsADirectoryError):
            transform.validate_paths(self.src, self.dir)


if __name__ == "__main__":
    unittest.main()
