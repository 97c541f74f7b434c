"""Base classes for metadata file parsers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Generic, TypeVar

import structlog
from pydantic import BaseModel

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)


def decode_text(data: bytes | str | BinaryIO) -> str:
    """Decode parser input to text, tolerating a UTF-8 BOM and bad bytes."""
    if isinstance(data, str):
        return data
    if not isinstance(data, bytes):
        data = data.read()
    return data.decode("utf-8-sig", errors="replace")


class FormatParser(ABC, Generic[T]):
    """Base class for text metadata parsers."""

    @abstractmethod
    def parse(self, data: bytes | str | BinaryIO) -> T:
        """Parse metadata.

        Args:
            data: Raw bytes, text or a binary stream

        Returns:
            Parsed format object
        """
        ...

    def parse_file(self, path: str | Path) -> T:
        """Parse format from file.

        Args:
            path: File path

        Returns:
            Parsed format object

        Raises:
            ValueError: If the file cannot be read
        """
        try:
            with open(path, "rb") as f:
                return self.parse(f)
        except OSError as e:
            logger.error("format_read_failed", path=str(path), error=str(e))
            raise ValueError(f"Cannot read file {path}: {e}") from e

    @abstractmethod
    def build(self, obj: T) -> str:
        """Serialize an object back to text.

        Args:
            obj: Format object

        Returns:
            Text in the format's syntax
        """
        ...

    def build_file(self, obj: T, path: str | Path) -> None:
        """Build format to file.

        Args:
            obj: Format object
            path: Output file path

        Raises:
            ValueError: If the file cannot be written
        """
        try:
            Path(path).write_text(self.build(obj), encoding="utf-8")
        except OSError as e:
            logger.error("format_write_failed", path=str(path), error=str(e))
            raise ValueError(f"Cannot write file {path}: {e}") from e
