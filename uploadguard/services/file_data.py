import asyncio
import io
import os
from pathlib import Path, PurePath
from typing import BinaryIO, Callable, Optional, Tuple, Union

from uploadguard.errors import OperationalError
from uploadguard.utils.logger import get_logger

logger = get_logger(__name__)

READ_CHUNK_SIZE = 64 * 1024

SourceLike = Union[bytes, bytearray, memoryview, str, os.PathLike, Callable[[], BinaryIO], "ByteSource"]


class ByteSource:
	"""
	One input to the pipeline: an opaque identifier plus a way to (re)open its bytes.

	The source may be in-memory bytes, a filesystem path, or a zero-argument
	callable returning a binary stream. Every read opens a fresh stream so
	that sniffing, hashing and validation can run independently.
	"""

	def __init__(self, identifier: str, source: SourceLike) -> None:
		self.identifier = identifier
		self._data: Optional[bytes] = None
		self._path: Optional[Path] = None
		self._opener: Optional[Callable[[], BinaryIO]] = None

		if isinstance(source, ByteSource):
			self._data, self._path, self._opener = source._data, source._path, source._opener
		elif isinstance(source, (bytes, bytearray, memoryview)):
			self._data = bytes(source)
		elif isinstance(source, (str, os.PathLike)):
			self._path = Path(source)
		elif callable(source):
			self._opener = source
		else:
			raise TypeError(f"unsupported byte source for {identifier!r}: {type(source).__name__}")

	@property
	def extension(self) -> Optional[str]:
		"""Claimed extension taken from the identifier, lower-cased; None when absent."""
		suffix = PurePath(self.identifier).suffix.lower()
		return suffix or None

	def open(self) -> BinaryIO:
		if self._data is not None:
			return io.BytesIO(self._data)
		if self._path is not None:
			return open(self._path, "rb")
		if self._opener is None:
			raise OperationalError("byte source has nothing to open", identifier=self.identifier)
		stream = self._opener()
		if stream is None:
			raise OSError(f"opener for {self.identifier!r} returned no stream")
		return stream

	def read_prefix(self, size: int) -> bytes:
		data, _ = self.read_bounded(size)
		return data

	def read_bounded(self, limit: int) -> Tuple[bytes, bool]:
		"""
		Read at most ``limit`` bytes.

		Returns ``(data, truncated)`` where ``truncated`` is True when the
		source holds more than ``limit`` bytes. I/O failures raise
		``OperationalError``.
		"""
		if self._data is not None:
			return self._data[:limit], len(self._data) > limit

		buffer = bytearray()
		try:
			with self.open() as stream:
				while len(buffer) < limit:
					chunk = stream.read(min(READ_CHUNK_SIZE, limit - len(buffer)))
					if not chunk:
						return bytes(buffer), False
					buffer.extend(chunk)
				truncated = bool(stream.read(1))
		except (OSError, ValueError) as exc:
			logger.error("Read failed | identifier=%s | error=%s", self.identifier, exc)
			raise OperationalError(f"unable to read input: {exc}", identifier=self.identifier) from exc
		return bytes(buffer), truncated

	def __repr__(self) -> str:
		return f"ByteSource({self.identifier!r})"


class FileDataService:
	"""Resolve pipeline inputs into byte sources and read them off the event loop."""

	def resolve(self, identifier: str, source: SourceLike) -> ByteSource:
		if isinstance(source, ByteSource) and source.identifier == identifier:
			return source
		return ByteSource(identifier, source)

	async def fetch_prefix(self, source: ByteSource, size: int) -> bytes:
		return await asyncio.to_thread(source.read_prefix, size)

	async def fetch_bounded(self, source: ByteSource, limit: int) -> Tuple[bytes, bool]:
		return await asyncio.to_thread(source.read_bounded, limit)
