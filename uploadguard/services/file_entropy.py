import math
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from uploadguard.utils.logger import get_logger

BytesLike = Union[bytes, bytearray, memoryview]
logger = get_logger(__name__)

# Called with the number of bytes about to be scanned; returns False to stop.
Checkpoint = Callable[[int], bool]


class FileEntropyService:
    """Sliding-window Shannon entropy scanner.

    Used by the image validator to locate regions of near-random bytes
    (candidate steganography payloads or appended encrypted blobs). Scanning
    is bounded by an optional cooperative checkpoint and a wall-clock time
    budget; a scan that stops early is marked ``partial``.
    """

    def __init__(self, *, chunk_size: int = 4096, time_budget: float = 5.0) -> None:
        self.chunk_size = max(64, chunk_size)
        self.time_budget = time_budget

    def high_entropy_regions(
        self,
        file_data: BytesLike,
        threshold: float,
        window: Optional[int] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> List[Dict[str, Any]]:
        """
        Return merged regions of consecutive windows whose entropy exceeds ``threshold``.

        Windows do not overlap, so every byte is charged to ``checkpoint`` once.
        Each region carries ``offset``, ``length``, ``max_entropy`` and ``windows``.
        """
        data_view = memoryview(file_data).cast("B")
        if not data_view:
            return []
        size = max(64, window or self.chunk_size)
        windows, partial = self._scan_windows(data_view, size, checkpoint)
        if partial:
            logger.debug("Entropy scan stopped early after %d window(s)", len(windows))

        regions: List[Dict[str, Any]] = []
        current: Optional[Dict[str, Any]] = None
        for entry in windows:
            # A short tail window cannot reach a high entropy figure; skip it
            if entry["length"] < size // 2 or entry["entropy"] <= threshold:
                current = None
                continue
            if current is not None and current["offset"] + current["length"] == entry["offset"]:
                current["length"] += entry["length"]
                current["max_entropy"] = max(current["max_entropy"], entry["entropy"])
                current["windows"] += 1
            else:
                current = {
                    "offset": entry["offset"],
                    "length": entry["length"],
                    "max_entropy": entry["entropy"],
                    "windows": 1,
                }
                regions.append(current)

        for region in regions:
            region["max_entropy"] = round(region["max_entropy"], 4)
        return regions

    def _scan_windows(
        self,
        data_view: memoryview,
        size: int,
        checkpoint: Optional[Checkpoint],
    ) -> Tuple[List[Dict[str, Any]], bool]:
        start_time = time.perf_counter()
        data_len = len(data_view)
        windows: List[Dict[str, Any]] = []
        offset = 0

        while offset < data_len:
            end = min(offset + size, data_len)
            if checkpoint is not None and not checkpoint(end - offset):
                return windows, True
            windows.append(
                {"offset": offset, "length": end - offset, "entropy": self.shannon_entropy(data_view[offset:end])}
            )
            offset = end

            if (time.perf_counter() - start_time) > self.time_budget:
                logger.warning(
                    "Entropy sliding window timeout after %.2f ms", (time.perf_counter() - start_time) * 1000
                )
                return windows, True

        return windows, False

    @staticmethod
    def shannon_entropy(data: BytesLike) -> float:
        total = len(data)
        if total == 0:
            return 0.0
        counts = Counter(bytes(data))
        entropy = 0.0
        for count in counts.values():
            p = count / total
            entropy -= p * math.log2(p)
        return entropy
