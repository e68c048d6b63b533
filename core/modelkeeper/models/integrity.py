"""
Integrity verification for downloaded model files.
Checks size, checksum and format signature. Never deletes anything:
failures are reported so the caller can offer a repair (re-download).
"""

import hashlib
import os
import struct
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from modelkeeper.errors import NotFoundError, StorageError
from modelkeeper.models.record import ModelRecord
from modelkeeper.utils.logging import logger

MIB = 1024 * 1024
HEADER_BYTES = 16


class FormatKind(str, Enum):
    """Container formats the verifier knows how to sanity-check."""

    GGUF = "gguf"
    GGML = "ggml"
    SAFETENSORS = "safetensors"
    PYTORCH = "pytorch"
    UNKNOWN = "unknown"

    @classmethod
    def from_path(cls, path: Path | str) -> "FormatKind":
        return _EXTENSION_KINDS.get(Path(path).suffix.lower(), cls.UNKNOWN)


_EXTENSION_KINDS = {
    ".gguf": FormatKind.GGUF,
    ".ggml": FormatKind.GGML,
    ".safetensors": FormatKind.SAFETENSORS,
    ".pt": FormatKind.PYTORCH,
    ".pth": FormatKind.PYTORCH,
}

# Pickle protocol 2-5 markers, and the zip header newer torch.save() writes
_PICKLE_PREFIXES = (b"\x80\x02", b"\x80\x03", b"\x80\x04", b"\x80\x05")
_ZIP_PREFIX = b"PK\x03\x04"


def size_tolerance(expected: int) -> int:
    """Allowed difference between declared and observed size: 1% or 1 MiB."""
    return max(expected // 100, MIB)


def sizes_match(actual: int, expected: int) -> bool:
    if expected <= 0:
        return True
    return abs(actual - expected) <= size_tolerance(expected)


@dataclass
class VerificationResult:
    """Outcome of a full verification pass."""

    is_valid: bool
    size_match: bool
    format_ok: bool
    readable: bool
    actual_size: int
    expected_size: int
    checksum_match: Optional[bool] = None  # None when no expected digest is known
    actual_checksum: Optional[str] = None
    expected_checksum: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def summary(self) -> str:
        if self.is_valid:
            return "Model integrity verified successfully"
        return f"Model integrity verification failed: {', '.join(self.errors)}"

    def report(self) -> str:
        """Multi-line human readable report."""

        def mark(ok: bool) -> str:
            return "ok" if ok else "FAILED"

        lines = [
            "Model Integrity Verification Report",
            f"Overall Result: {'VALID' if self.is_valid else 'INVALID'}",
            f"Verification Time: {self.elapsed:.2f}s",
            f"- File Readable: {mark(self.readable)}",
            f"- Size Match: {mark(self.size_match)} "
            f"(Expected: {self.expected_size}, Actual: {self.actual_size})",
            f"- Format: {mark(self.format_ok)}",
        ]
        if self.checksum_match is None:
            lines.append("- Checksum: Not available")
        else:
            lines.append(f"- Checksum Match: {mark(self.checksum_match)}")
            lines.append(f"  Expected: {self.expected_checksum}")
            lines.append(f"  Actual: {self.actual_checksum}")
        for error in self.errors:
            lines.append(f"! {error}")
        for warning in self.warnings:
            lines.append(f"? {warning}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "size_match": self.size_match,
            "checksum_match": self.checksum_match,
            "format_ok": self.format_ok,
            "readable": self.readable,
            "actual_size": self.actual_size,
            "expected_size": self.expected_size,
            "actual_checksum": self.actual_checksum,
            "expected_checksum": self.expected_checksum,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "elapsed": round(self.elapsed, 3),
        }


class IntegrityVerifier:
    """
    Decides whether a model file on disk is trustworthy.
    """

    def __init__(self, block_size: int = MIB):
        self.block_size = block_size

    def checksum(self, path: Path | str) -> str:
        """
        SHA-256 of a file as lower-case hex.

        Reads in fixed-size blocks so multi-gigabyte files never sit in memory.
        """
        digest = hashlib.sha256()
        try:
            with open(path, "rb") as f:
                while block := f.read(self.block_size):
                    digest.update(block)
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {path}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e
        return digest.hexdigest()

    def validate_format(
        self, path: Path | str, kind: Optional[FormatKind] = None
    ) -> tuple[bool, list[str]]:
        """
        Check the format signature in the file header.

        Args:
            path: File to inspect
            kind: Declared format, derived from the extension when omitted

        Returns:
            (ok, messages). Messages explain failures, or carry soft warnings
            when ok is True.
        """
        path = Path(path)
        kind = kind or FormatKind.from_path(path)

        try:
            with open(path, "rb") as f:
                header = f.read(HEADER_BYTES)
            file_size = path.stat().st_size
        except OSError as e:
            return False, [f"Could not read file header: {e}"]

        if len(header) < 4:
            return False, ["File is too small to be a valid model"]

        if kind == FormatKind.GGUF:
            if not header.startswith(b"GGUF"):
                return False, ["Invalid GGUF file signature"]
        elif kind == FormatKind.GGML:
            if not header.startswith(b"ggml"):
                return False, ["Invalid GGML file signature"]
        elif kind == FormatKind.SAFETENSORS:
            return self._validate_safetensors(header, file_size)
        elif kind == FormatKind.PYTORCH:
            if not header.startswith(_PICKLE_PREFIXES + (_ZIP_PREFIX,)):
                # Not fatal: older checkpoints use other pickle protocols
                return True, ["PyTorch file does not start with a known pickle or zip signature"]
        elif not any(header):
            return False, ["File appears to be empty or corrupted"]

        logger.debug(f"Format validation passed for {kind.value} file {path.name}")
        return True, []

    def _validate_safetensors(self, header: bytes, file_size: int) -> tuple[bool, list[str]]:
        if len(header) < 9:
            return False, ["File is too small to be a valid safetensors file"]
        (header_len,) = struct.unpack("<Q", header[:8])
        if header_len == 0 or header_len > file_size - 8:
            return False, [f"Invalid safetensors header length: {header_len}"]
        if header[8:9] != b"{":
            return False, ["Safetensors header is not a JSON object"]
        return True, []

    def verify(self, record: ModelRecord) -> VerificationResult:
        """
        Full verification of a local model.

        Raises:
            NotFoundError: If the record has no local path or the file is gone
        """
        started = time.monotonic()
        errors: list[str] = []
        warnings: list[str] = []

        if not record.local_path:
            raise NotFoundError("Model has no local path", model_id=record.id)
        path = Path(record.local_path)
        if not path.is_file():
            raise NotFoundError(f"Model file does not exist at path: {path}", model_id=record.id)

        logger.info(f"Starting integrity verification for model: {record.name}")

        readable = os.access(path, os.R_OK)
        if not readable:
            errors.append("Model file is not readable")

        actual_size = path.stat().st_size
        size_match = sizes_match(actual_size, record.size)
        if not size_match:
            errors.append(f"File size mismatch: expected {record.size}, got {actual_size}")

        actual_checksum = None
        checksum_match = None
        if record.checksum and readable:
            actual_checksum = self.checksum(path)
            checksum_match = actual_checksum == record.checksum
            if not checksum_match:
                errors.append(
                    f"Checksum mismatch: expected {record.checksum}, got {actual_checksum}"
                )
        elif not record.checksum:
            warnings.append("No expected checksum available; content not verified")

        format_ok, messages = self.validate_format(path)
        if format_ok:
            warnings.extend(messages)
        else:
            errors.extend(f"File format validation failed: {m}" for m in messages)

        result = VerificationResult(
            is_valid=readable and not errors,
            size_match=size_match,
            format_ok=format_ok,
            readable=readable,
            actual_size=actual_size,
            expected_size=record.size,
            checksum_match=checksum_match,
            actual_checksum=actual_checksum,
            expected_checksum=record.checksum,
            errors=errors,
            warnings=warnings,
            elapsed=time.monotonic() - started,
        )

        status = "VALID" if result.is_valid else "INVALID"
        logger.info(f"Integrity verification for {record.name}: {status} ({result.elapsed:.2f}s)")
        if errors:
            logger.warning(f"Verification errors for {record.name}: {', '.join(errors)}")
        return result

    def quick_verify(self, record: ModelRecord) -> bool:
        """Existence, readability and a loose size check (10% or 10 MiB). No hashing."""
        if not record.local_path:
            return False
        path = Path(record.local_path)
        if not path.is_file() or not os.access(path, os.R_OK):
            return False
        if record.size <= 0:
            return True
        tolerance = max(record.size // 10, 10 * MIB)
        return abs(path.stat().st_size - record.size) <= tolerance
