import asyncio
import bz2
import json
from datetime import datetime, timezone

from domaincrawl.services import output_sink
from domaincrawl.services.output_sink import (
    OutputSink,
    TextRecord,
    escape_root_url,
    output_file_name,
)


def _record(i: int) -> TextRecord:
    return TextRecord(
        tag="P",
        text=f"paragraph {i}",
        level=1,
        source="https://example.com/a",
        timestamp="2026-10-17T08:00:00Z",
    )


def test_file_names_escape_the_root_url():
    assert escape_root_url("https://example.com") == "https_COLON__SLASH__SLASH_example.com"
    flushed = datetime(2026, 10, 17, 8, 30, 5, 123456, tzinfo=timezone.utc)
    assert output_file_name("https://example.com", flushed) == (
        "https_COLON__SLASH__SLASH_example.com_EOURL_2026-10-17T083005.123456Z.txt"
    )


def test_records_are_flushed_in_buffer_sized_compressed_files(tmp_path):
    async def _run():
        sink = OutputSink(tmp_path, "https://example.com", buffer_size=3)
        for i in range(7):
            await sink.write(_record(i))
        assert sink.buffered == 1
        await sink.close()
        assert sink.buffered == 0

    asyncio.run(_run())

    assert list(tmp_path.glob("*.txt")) == []
    files = sorted(tmp_path.glob("*.txt.bz2"))
    assert len(files) == 3

    batches = [bz2.decompress(path.read_bytes()).decode("utf-8").splitlines() for path in files]
    assert sorted(len(lines) for lines in batches) == [1, 3, 3]
    texts = sorted(json.loads(line)["text"] for lines in batches for line in lines)
    assert texts == sorted(f"paragraph {i}" for i in range(7))

    first = json.loads(batches[0][0])
    assert set(first) == {"tag", "text", "level", "source", "timestamp"}


def test_close_without_records_writes_nothing(tmp_path):
    async def _run():
        sink = OutputSink(tmp_path / "out", "https://example.com", buffer_size=3)
        assert await sink.flush() is None
        await sink.close()

    asyncio.run(_run())
    assert not (tmp_path / "out").exists()


def test_compression_failure_leaves_plain_file(tmp_path, monkeypatch):
    def broken(path):
        raise OSError("bzip2 unavailable")

    monkeypatch.setattr(output_sink, "compress_file", broken)

    async def _run():
        sink = OutputSink(tmp_path, "https://example.com", buffer_size=2)
        await sink.write(_record(1))
        await sink.write(_record(2))
        await sink.close()

    asyncio.run(_run())
    plain = list(tmp_path.glob("*.txt"))
    assert len(plain) == 1
    assert len(plain[0].read_text(encoding="utf-8").splitlines()) == 2


def test_write_failure_does_not_raise(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")

    async def _run():
        sink = OutputSink(blocker, "https://example.com", buffer_size=1)
        await sink.write(_record(1))
        await sink.close()
        assert sink.buffered == 0

    asyncio.run(_run())
