"""Buffered newline-delimited JSON output for extracted page text.

Each flush writes one file named after the root URL and the flush time, then
compresses it with bzip2 in the background. Output problems are logged and
never interrupt the crawl.
"""

import asyncio
import bz2
import json
import logging
import shutil
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 10_000


@dataclass(frozen=True)
class TextRecord:
    tag: str
    text: str
    level: int
    source: str
    timestamp: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def escape_root_url(root_url: str) -> str:
    return root_url.replace("/", "_SLASH_").replace(":", "_COLON_")


def output_file_name(root_url: str, flushed_at: datetime) -> str:
    stamp = flushed_at.strftime("%Y-%m-%dT%H%M%S.%fZ")
    return f"{escape_root_url(root_url)}_EOURL_{stamp}.txt"


def compress_file(path: Path) -> Path:
    """bzip2 ``path`` at the highest level and remove the uncompressed file."""
    target = path.with_name(path.name + ".bz2")
    with path.open("rb") as src, bz2.open(target, "wb", compresslevel=9) as dst:
        shutil.copyfileobj(src, dst)
    path.unlink()
    return target


class OutputSink:
    def __init__(self, directory: Path, root_url: str, buffer_size: int = DEFAULT_BUFFER_SIZE):
        if buffer_size < 1:
            raise ValueError("buffer_size must be positive")
        self.directory = Path(directory)
        self.root_url = root_url
        self.buffer_size = buffer_size
        self._buffer: list[str] = []
        self._pending: set[asyncio.Task] = set()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def write(self, record: TextRecord) -> None:
        self._buffer.append(record.to_json())
        if len(self._buffer) >= self.buffer_size:
            await self.flush()

    async def flush(self) -> Path | None:
        """Persist the buffer to a new file and schedule its compression."""
        if not self._buffer:
            return None
        lines, self._buffer = self._buffer, []

        try:
            path = await asyncio.to_thread(self._write_file, lines)
        except OSError:
            logger.exception("Unable to write %s buffered records", len(lines))
            return None

        logger.info("Wrote %s records to %s", len(lines), path)
        task = asyncio.create_task(self._compress(path))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return path

    async def close(self) -> None:
        """Flush what is left and wait for outstanding compressions."""
        await self.flush()
        if self._pending:
            await asyncio.gather(*self._pending)

    def _write_file(self, lines: list[str]) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / output_file_name(self.root_url, datetime.now(timezone.utc))
        suffix = 0
        while path.exists() or path.with_name(path.name + ".bz2").exists():
            suffix += 1
            path = path.with_name(f"{path.stem.rsplit('~', 1)[0]}~{suffix}.txt")
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    async def _compress(self, path: Path) -> None:
        try:
            target = await asyncio.to_thread(compress_file, path)
        except OSError:
            logger.exception("Unable to compress %s", path)
            return
        logger.debug("Compressed %s", target)
