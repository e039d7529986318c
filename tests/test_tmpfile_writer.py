import pytest

from chcache.tmpfile_writer import TmpFileResponseWriter


class FakeResponse:
    def __init__(self, headers=None):
        if headers is None:
            headers = {
                "Content-Type": "content-type-1",
                "Content-Encoding": "content-encoding-1",
            }
        self.headers = headers
        self.status = 0

    def close_notify(self):
        return "notified"


class NoNotifyResponse:
    headers = {}


@pytest.fixture
def tmp_dir(tmp_path):
    directory = tmp_path / "test-tmp-data"
    directory.mkdir()
    return directory


def test_file_creation(tmp_dir):
    before = len(list(tmp_dir.iterdir()))
    with TmpFileResponseWriter(FakeResponse(), str(tmp_dir)):
        after = len(list(tmp_dir.iterdir()))
        assert after == before + 1


def test_file_removal(tmp_dir):
    before = len(list(tmp_dir.iterdir()))
    writer = TmpFileResponseWriter(FakeResponse(), str(tmp_dir))
    writer.close()
    assert len(list(tmp_dir.iterdir())) == before


def test_write_then_read_header(tmp_dir):
    with TmpFileResponseWriter(FakeResponse(), str(tmp_dir)) as writer:
        writer.write(b"this is a test1 of length 28")
        assert writer.captured_content_type() == "content-type-1"
        assert writer.captured_content_encoding() == "content-encoding-1"
        assert writer.captured_content_length() == 28


def test_headers_not_captured_before_write(tmp_dir):
    with TmpFileResponseWriter(FakeResponse(), str(tmp_dir)) as writer:
        assert writer.captured_content_type() == ""
        assert writer.captured_content_encoding() == ""


def test_header_lookup_is_case_insensitive(tmp_dir):
    response = FakeResponse({"content-type": "json", "content-encoding": ["gzip"]})
    with TmpFileResponseWriter(response, str(tmp_dir)) as writer:
        writer.write(b"x")
        assert writer.captured_content_type() == "json"
        assert writer.captured_content_encoding() == "gzip"


def test_write_then_read_content(tmp_dir):
    with TmpFileResponseWriter(FakeResponse(), str(tmp_dir)) as writer:
        expected = b"test content"
        assert writer.write(expected) == len(expected)
        reader = writer.reader()
        writer.reset_file_offset()
        assert reader.read() == expected


def test_content_length_keeps_read_position(tmp_dir):
    with TmpFileResponseWriter(FakeResponse(), str(tmp_dir)) as writer:
        writer.write(b"first ")
        writer.write(b"second")
        assert writer.captured_content_length() == 12
        assert writer.reader().read() == b"first second"


def test_write_then_read_status_code(tmp_dir):
    with TmpFileResponseWriter(FakeResponse(), str(tmp_dir)) as writer:
        assert writer.status_code() == 200
        writer.write_header(444)
        assert writer.status_code() == 444


def test_close_notify_delegates(tmp_dir):
    with TmpFileResponseWriter(FakeResponse(), str(tmp_dir)) as writer:
        assert writer.close_notify() == "notified"


def test_response_without_close_notify_is_rejected(tmp_dir):
    with pytest.raises(TypeError):
        TmpFileResponseWriter(NoNotifyResponse(), str(tmp_dir))


def test_missing_directory_raises(tmp_path):
    with pytest.raises(OSError):
        TmpFileResponseWriter(FakeResponse(), str(tmp_path / "missing"))