import asyncio
import hashlib
from typing import BinaryIO

from uploadguard.errors import OperationalError
from uploadguard.models.reports import HashResult
from uploadguard.services.file_data import ByteSource
from uploadguard.utils.logger import get_logger

logger = get_logger(__name__)

HASH_CHUNK_SIZE = 64 * 1024


class FileHashingService:
    """
    Service for computing file hashes
    """

    algorithm = "sha256"

    def hash_bytes(self, file_data: bytes) -> HashResult:
        digest = hashlib.sha256(file_data).hexdigest()
        return HashResult(algorithm=self.algorithm, digest=digest, size=len(file_data))

    def hash_stream(self, stream: BinaryIO, chunk_size: int = HASH_CHUNK_SIZE) -> HashResult:
        """
        Compute SHA-256 over a binary stream without holding it in memory.

        Read failures propagate as ``OSError``; callers decide how to report them.
        """
        sha256_hash = hashlib.sha256()
        size = 0
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            sha256_hash.update(chunk)
            size += len(chunk)
        return HashResult(algorithm=self.algorithm, digest=sha256_hash.hexdigest(), size=size)

    async def hash_file(self, source: ByteSource) -> HashResult:
        """
        Compute SHA-256 hash of a byte source
        """
        return await asyncio.to_thread(self._hash_source_sync, source)

    def _hash_source_sync(self, source: ByteSource) -> HashResult:
        try:
            with source.open() as stream:
                result = self.hash_stream(stream)
        except OSError as exc:
            logger.error("Hashing failed | identifier=%s | error=%s", source.identifier, exc)
            raise OperationalError(f"unable to read input: {exc}", identifier=source.identifier) from exc

        logger.debug("Hashed %s | sha256=%s | size=%d", source.identifier, result.digest, result.size)
        return result
