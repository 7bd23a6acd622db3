"""
Local-disk uploader.

Appends recorded chunks to a single file per session. ``finalize_upload``
reports success only when at least one non-empty chunk was written.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from meetbot.config import get_config

logger = logging.getLogger(__name__)


class LocalFileUploader:
    """Uploader that writes the recording to ``output_dir/<name>.webm``."""

    def __init__(self, name: str, output_dir: Optional[Path] = None, extension: str = "webm"):
        self.output_dir = Path(output_dir or get_config().recording.output_dir)
        self.path = self.output_dir / f"{name}.{extension}"
        self.bytes_written = 0
        self.chunks_written = 0
        self._lock = asyncio.Lock()
        self._finalized = False

    def _append(self, data: bytes) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        with open(self.path, "ab") as f:
            f.write(data)

    async def save_chunk(self, data: bytes) -> None:
        if not data:
            return
        if self._finalized:
            logger.warning(f"[REC] Dropping {len(data)} byte chunk received after finalize")
            return
        async with self._lock:
            await asyncio.to_thread(self._append, data)
            self.bytes_written += len(data)
            self.chunks_written += 1

    async def finalize_upload(self) -> bool:
        async with self._lock:
            self._finalized = True
        if self.bytes_written == 0:
            logger.warning(f"[REC] No recording data written to {self.path}")
            return False
        logger.info(f"[REC] Recording saved: {self.path} ({self.chunks_written} chunks, {self.bytes_written} bytes)")
        return True
