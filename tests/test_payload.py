import asyncio
import base64
import json

from snapsend.transfer.payload import (
    ENCODING_BASE64,
    ENCODING_TEXT,
    BytesSource,
    FileSource,
    base64_length,
    decode_content,
    encode_content,
)


def wire_size(content: str) -> int:
    return len(json.dumps(content, ensure_ascii=False).encode("utf-8")) - 2


def test_text_stays_raw():
    assert encode_content(b"hello\nworld", text=True) == ("hello\nworld", ENCODING_TEXT)


def test_multibyte_text_stays_raw_and_compact():
    data = ("文字" * 500 + "🙂" * 100).encode("utf-8")
    content, encoding = encode_content(data, text=True)
    assert encoding == ENCODING_TEXT
    assert wire_size(content) == len(data)


def test_escape_heavy_text_falls_back_to_base64():
    data = b"\n" * 300 + b"\x00" * 300
    content, encoding = encode_content(data, text=True)
    assert encoding == ENCODING_BASE64
    assert base64.b64decode(content) == data


def test_inline_content_never_exceeds_base64_size():
    samples = [
        b"plain ascii text",
        "переписка".encode("utf-8") * 50,
        b'"quoted" \\ back\\slashes' * 20,
        b"\t\r\n" * 100,
        bytes(range(256)),
    ]
    for data in samples:
        content, encoding = encode_content(data, text=True)
        assert wire_size(content) <= base64_length(len(data))
        assert decode_content(content, encoding) == data


def test_binary_is_base64():
    content, encoding = encode_content(b"\xff\xfe\x00", text=False)
    assert encoding == ENCODING_BASE64
    assert decode_content(content, encoding) == b"\xff\xfe\x00"


def test_data_url_is_tolerated():
    assert decode_content("data:text/plain;base64,aGk=", ENCODING_BASE64) == b"hi"


def test_file_source_reads_ranges(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"0123456789")
    source = FileSource(str(path))

    assert source.size == 10
    assert asyncio.run(source.read(3, 4)) == b"3456"
    assert asyncio.run(BytesSource(b"abc").read_all()) == b"abc"
